import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .alerting import Mailer
from .chat import ChatCompletionClient
from .config import Settings, load_settings
from .db import Database
from .errors import GreenhouseError
from .routers import auth, chatbot, commands, data, reports

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    database = Database(settings.database_url, pool_size=settings.db_pool_size, echo=settings.db_echo)
    mailer = Mailer(settings.smtp)
    chat_client = ChatCompletionClient(
        settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await database.init(create_tables=settings.db_create_tables)
        await mailer.init()
        await chat_client.init()
        try:
            yield
        finally:
            await mailer.shutdown()
            await chat_client.shutdown()
            await database.shutdown()

    app = FastAPI(title="EcoFlow Greenhouse API", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.mailer = mailer
    app.state.chat_client = chat_client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GreenhouseError)
    async def handle_greenhouse_error(request: Request, exc: GreenhouseError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Validation error", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error."})

    app.include_router(auth.router)
    app.include_router(commands.router)
    app.include_router(data.router)
    app.include_router(reports.router)
    app.include_router(chatbot.router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ecoflow.main:create_app", factory=True, host="0.0.0.0", port=5000, reload=True)
