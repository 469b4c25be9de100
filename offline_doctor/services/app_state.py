# offline_doctor/services/app_state.py
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from offline_doctor.core.config import AppSettings
from offline_doctor.services.backend_supervisor import BackendSupervisor
from offline_doctor.services.conversation_store import ConversationStore
from offline_doctor.services.model_catalog import ModelCatalog

logger = logging.getLogger(__name__)


class AppState:
    """Everything a request needs, passed explicitly. The engine slot is lock-guarded."""

    def __init__(self, settings: AppSettings, store: ConversationStore, catalog: ModelCatalog) -> None:
        self.settings = settings
        self.store = store
        self.catalog = catalog
        self._engine: Optional[BackendSupervisor] = None
        self._engine_lock = asyncio.Lock()

    @classmethod
    async def open(cls, settings: AppSettings) -> "AppState":
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        store = await ConversationStore.open(settings.database_path)
        catalog = ModelCatalog(settings.models_dir)
        return cls(settings, store, catalog)

    async def engine(self) -> Optional[BackendSupervisor]:
        async with self._engine_lock:
            return self._engine

    async def install_engine(self, engine: BackendSupervisor) -> None:
        async with self._engine_lock:
            previous, self._engine = self._engine, engine
        if previous is not None and previous is not engine:
            await previous.shutdown()

    async def shutdown_engine(self) -> None:
        async with self._engine_lock:
            engine = self._engine
        if engine is not None:
            await engine.shutdown()

    async def close(self) -> None:
        try:
            await self.shutdown_engine()
        finally:
            await self.store.close()
        logger.info("Application state closed")
