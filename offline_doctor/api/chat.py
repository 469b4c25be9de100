# POST /chat
from fastapi import APIRouter, Depends

from offline_doctor.api.deps import get_orchestrator
from offline_doctor.core.schemas import ChatRequest, ChatResponse
from offline_doctor.services.chat_orchestrator import ChatOrchestrator

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("", response_model=ChatResponse)
async def send_chat_message(payload: ChatRequest, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.send_message(payload)
