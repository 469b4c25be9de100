"""Caller-facing operations.

Every operation either returns its result or raises a single
OperationFailed naming the step that failed. Store writes committed before
a failure stay committed.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from offline_doctor.core.errors import (
    AssistantError,
    ConfirmationRequired,
    ModelNotFound,
    NotFound,
    NotReady,
    OperationFailed,
)
from offline_doctor.core.schemas import (
    ROLE_ASSISTANT,
    ROLE_USER,
    ChatRequest,
    ChatResponse,
    Conversation,
    EngineStatus,
    Message,
    ModelInfo,
)
from offline_doctor.services.app_state import AppState
from offline_doctor.services.backend_supervisor import BackendState, BackendSupervisor
from offline_doctor.services.conversation_store import title_from_message
from offline_doctor.services.model_catalog import ProgressCallback
from offline_doctor.services.prompt_builder import build_prompt

logger = logging.getLogger(__name__)


@contextmanager
def _step(description: str) -> Iterator[None]:
    try:
        yield
    except AssistantError as e:
        logger.warning("%s: %s", description, e)
        raise OperationFailed(description, e) from e


class ChatOrchestrator:
    def __init__(self, state: AppState) -> None:
        self.state = state

    async def send_message(self, request: ChatRequest) -> ChatResponse:
        """One chat turn: store user message, build prompt from history, generate, store reply."""
        store = self.state.store
        conversation_id = request.conversation_id

        if conversation_id is None:
            with _step("Failed to create conversation"):
                conversation_id = await store.create_conversation(title_from_message(request.message))
        else:
            with _step("Failed to load conversation"):
                if await store.get_conversation(conversation_id) is None:
                    raise NotFound(f"Conversation {conversation_id} not found")

        with _step("Failed to store user message"):
            user_message_id = await store.append_message(conversation_id, ROLE_USER, request.message)

        with _step("Failed to get conversation history"):
            history = await store.list_messages(conversation_id)

        with _step("Failed to generate AI response"):
            engine = await self.state.engine()
            if engine is None:
                raise NotReady("AI engine not initialized")
            reply = await engine.generate(build_prompt(request.message, history))

        with _step("Failed to store AI response"):
            message_id = await store.append_message(conversation_id, ROLE_ASSISTANT, reply)

        logger.info("Chat turn complete: conversation=%s message_id=%s", conversation_id, message_id)
        return ChatResponse(
            message=reply,
            conversation_id=conversation_id,
            message_id=message_id,
            user_message_id=user_message_id,
        )

    # Conversations

    async def list_conversations(self) -> List[Conversation]:
        with _step("Failed to get conversations"):
            return await self.state.store.list_conversations()

    async def get_conversation(self, conversation_id: str) -> Conversation:
        with _step("Failed to get conversation"):
            conversation = await self.state.store.get_conversation(conversation_id)
            if conversation is None:
                raise NotFound(f"Conversation {conversation_id} not found")
            return conversation

    async def list_messages(self, conversation_id: str) -> List[Message]:
        with _step("Failed to get conversation messages"):
            return await self.state.store.list_messages(conversation_id)

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        with _step("Failed to update conversation title"):
            await self.state.store.update_title(conversation_id, title)
        return await self.get_conversation(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        with _step("Failed to delete conversation"):
            await self.state.store.delete_conversation(conversation_id)

    async def clear_all(self, confirm: bool = False) -> None:
        with _step("Failed to clear data"):
            if not confirm:
                raise ConfirmationRequired("Clearing all data requires confirmation")
            await self.state.store.clear_all()

    # Engine

    async def initialize_engine(self, model_filename: str) -> EngineStatus:
        with _step("Failed to initialize AI engine"):
            model_path = self.state.catalog.model_path(model_filename)
            if not model_path.exists():
                raise ModelNotFound(f"Model file not found: {model_path}")

            # Only one backend can hold the port.
            await self.state.shutdown_engine()

            engine = BackendSupervisor.from_settings(model_path, self.state.settings)
            try:
                await engine.initialize()
            except AssistantError:
                await engine.shutdown()
                raise
            await self.state.install_engine(engine)
            return engine.status()

    async def engine_status(self) -> EngineStatus:
        engine = await self.state.engine()
        if engine is None:
            return EngineStatus(state=BackendState.UNINITIALIZED.value, ready=False)
        return engine.status()

    async def shutdown_engine(self) -> EngineStatus:
        with _step("Failed to shut down AI engine"):
            await self.state.shutdown_engine()
        return await self.engine_status()

    # Models

    def available_models(self) -> List[ModelInfo]:
        return self.state.catalog.available_models()

    async def download_model(self, filename: str, progress: Optional[ProgressCallback] = None) -> Path:
        with _step("Failed to download model"):
            model = self.state.catalog.find(filename)
            return await self.state.catalog.download_model(model, progress)

    def delete_model(self, filename: str) -> None:
        with _step("Failed to delete model"):
            self.state.catalog.delete_model(filename)
