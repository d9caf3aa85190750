"""FastAPI dependencies: settings, sessions, principals and shared clients."""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncGenerator

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from .alerting import Mailer
from .config import Settings
from .db import Database
from .errors import Forbidden, Unauthorized
from .security import keys_match, verify_token

if TYPE_CHECKING:
    from .chat import ChatCompletionClient

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: int | None
    role: str
    username: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


SERVICE_PRINCIPAL = Principal(user_id=None, role="service", username="service")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_chat_client(request: Request) -> "ChatCompletionClient":
    return request.app.state.chat_client


async def get_db(database: Database = Depends(get_database)) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


def _principal_from_token(token: str, settings: Settings) -> Principal:
    payload = verify_token(token, settings.jwt_secret, settings.jwt_algorithm)
    user_id = payload.get("user_id")
    role = payload.get("role")
    if user_id is None or not role:
        raise Forbidden("Token is invalid or expired.")
    return Principal(user_id=int(user_id), role=str(role), username=payload.get("username"))


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Authentication failed. Token required.")
    return _principal_from_token(credentials.credentials, settings)


def get_user_or_service(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    x_service_api_key: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """Accept either a bearer token or the service API key."""
    if x_service_api_key is not None:
        if keys_match(x_service_api_key, settings.service_api_key):
            return SERVICE_PRINCIPAL
        logger.warning("Rejected request with an invalid service API key")
        raise Forbidden("Invalid service API key.")
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Authentication failed. Token required.")
    return _principal_from_token(credentials.credentials, settings)


def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Access denied. Administrator privileges required.")
    return principal


def require_device(
    request: Request,
    x_api_key: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not keys_match(x_api_key, settings.device_api_key):
        logger.warning(
            "Unauthorized device request from %s", request.client.host if request.client else "unknown"
        )
        raise Unauthorized("Device authorization failed. Invalid API Key.")
