# /engine: llama.cpp backend lifecycle
from fastapi import APIRouter, Depends

from offline_doctor.api.deps import get_orchestrator
from offline_doctor.core.schemas import EngineInitIn, EngineStatus
from offline_doctor.services.chat_orchestrator import ChatOrchestrator

router = APIRouter(prefix="/engine", tags=["engine"])


@router.post("/initialize", response_model=EngineStatus)
async def initialize_ai_engine(payload: EngineInitIn, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    """Start llama-server for a downloaded model and wait until it is healthy (up to ~30s)."""
    return await orchestrator.initialize_engine(payload.model_filename)


@router.get("/status", response_model=EngineStatus)
async def engine_status(orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.engine_status()


@router.post("/shutdown", response_model=EngineStatus)
async def shutdown_engine(orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.shutdown_engine()
