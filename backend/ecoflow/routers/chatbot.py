from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..chat import ChatCompletionClient, answer_question
from ..db import Database
from ..deps import get_chat_client, get_database
from ..schemas import ChatRequest

router = APIRouter(prefix="/api", tags=["chatbot"])


@router.post("/chatbot")
async def chatbot(
    payload: ChatRequest,
    database: Database = Depends(get_database),
    client: ChatCompletionClient = Depends(get_chat_client),
):
    answer = await answer_question(payload.question, database=database, client=client)
    return JSONResponse(status_code=answer.status_code, content={"response": answer.response})
