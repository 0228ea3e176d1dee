from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from carematch.models import ChatRequest, ChatResponse, ChatTurn
from carematch.services.errors import StorageError
from carematch.services.orchestrator import CareMatchOrchestrator

router = APIRouter(prefix="/chat", tags=["chat"])
orchestrator = CareMatchOrchestrator()


@router.post("", response_model=ChatResponse)
def chat(request: ChatRequest):
    if not request.message.strip():
        raise HTTPException(status_code=422, detail="message must not be blank")
    return orchestrator.handle_message(message=request.message, email=request.email)


@router.get("/history", response_model=list[ChatTurn])
def history(
    email: str = Query(...),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
):
    try:
        return orchestrator.get_history(email=email, limit=limit)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
