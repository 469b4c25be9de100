# /conversations CRUD
from typing import List

from fastapi import APIRouter, Depends, Query

from offline_doctor.api.deps import get_orchestrator
from offline_doctor.core.schemas import Conversation, Message, TitleIn
from offline_doctor.services.chat_orchestrator import ChatOrchestrator

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=List[Conversation])
async def get_conversations(orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.list_conversations()


@router.delete("")
async def clear_all(
    confirm: bool = Query(False, description="Must be true; wipes every conversation"),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.clear_all(confirm=confirm)
    return {"message": "All conversations deleted"}


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_conversation(conversation_id)


@router.patch("/{conversation_id}", response_model=Conversation)
async def rename_conversation(
    conversation_id: str,
    payload: TitleIn,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.rename_conversation(conversation_id, payload.title)


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    await orchestrator.delete_conversation(conversation_id)
    return {"message": "Conversation deleted successfully"}


@router.get("/{conversation_id}/messages", response_model=List[Message])
async def get_conversation_messages(conversation_id: str, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.list_messages(conversation_id)
