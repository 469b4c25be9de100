# /models: catalog + downloads
import logging
from typing import List

from fastapi import APIRouter, Depends

from offline_doctor.api.deps import get_orchestrator
from offline_doctor.core.schemas import ModelInfo
from offline_doctor.services.chat_orchestrator import ChatOrchestrator

router = APIRouter(prefix="/models", tags=["models"])
logger = logging.getLogger(__name__)


@router.get("", response_model=List[ModelInfo])
async def get_available_models(orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    return orchestrator.available_models()


@router.post("/{filename}/download")
async def download_model(filename: str, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    last_pct = -1

    def report(downloaded: int, total: int) -> None:
        nonlocal last_pct
        if not total:
            return
        pct = downloaded * 100 // total
        if pct // 10 != last_pct // 10:
            last_pct = pct
            logger.info("Downloading %s: %d%%", filename, pct)

    path = await orchestrator.download_model(filename, progress=report)
    return {"message": f"Model downloaded to: {path}", "path": str(path)}


@router.delete("/{filename}")
async def delete_model(filename: str, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    orchestrator.delete_model(filename)
    return {"message": "Model deleted"}
