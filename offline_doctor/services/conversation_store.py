# offline_doctor/services/conversation_store.py
"""Conversations and messages stored under prefix-scannable keys.

Layout:
    conversation:{id}                      -> Conversation JSON
    message:{conversation_id}:{message_id} -> Message JSON

Scans come back in key order (i.e. by id), so every listing is re-sorted
before it is returned.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from offline_doctor.core.errors import NotFound, StorageError
from offline_doctor.core.schemas import ROLE_ASSISTANT, ROLE_USER, Conversation, Message
from offline_doctor.db.kv import OrderedKVStore
from offline_doctor.db.models import uuid_str

logger = logging.getLogger(__name__)

CONVERSATION_PREFIX = "conversation:"
MESSAGE_PREFIX = "message:"
TITLE_MAX_CHARS = 50
TITLE_ELLIPSIS = "..."
VALID_ROLES = (ROLE_USER, ROLE_ASSISTANT)


def conversation_key(conversation_id: str) -> bytes:
    return f"{CONVERSATION_PREFIX}{conversation_id}".encode("utf-8")


def message_prefix(conversation_id: str) -> bytes:
    return f"{MESSAGE_PREFIX}{conversation_id}:".encode("utf-8")


def message_key(conversation_id: str, message_id: str) -> bytes:
    return message_prefix(conversation_id) + message_id.encode("utf-8")


def title_from_message(text: str) -> str:
    if len(text) > TITLE_MAX_CHARS:
        return text[: TITLE_MAX_CHARS - len(TITLE_ELLIPSIS)] + TITLE_ELLIPSIS
    return text


class ConversationStore:
    def __init__(self, kv: OrderedKVStore) -> None:
        self.kv = kv
        self._last_tick: Optional[datetime] = None

    @classmethod
    async def open(cls, path: Path) -> "ConversationStore":
        return cls(await OrderedKVStore.open(path))

    async def close(self) -> None:
        await self.kv.close()

    def _now(self) -> datetime:
        # Never hand out a timestamp <= the previous one; listings sort on it.
        now = datetime.now(timezone.utc)
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(microseconds=1)
        self._last_tick = now
        return now

    @staticmethod
    def _load_conversation(raw: bytes) -> Conversation:
        try:
            return Conversation.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt conversation record: {e}") from e

    @staticmethod
    def _load_message(raw: bytes) -> Message:
        try:
            return Message.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt message record: {e}") from e

    async def _put_conversation(self, conversation: Conversation) -> None:
        await self.kv.put(conversation_key(conversation.id), conversation.model_dump_json().encode("utf-8"))

    async def create_conversation(self, title: str) -> str:
        now = self._now()
        conversation = Conversation(id=uuid_str(), title=title, created_at=now, updated_at=now)
        await self._put_conversation(conversation)
        logger.info("Created conversation %s", conversation.id)
        return conversation.id

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        raw = await self.kv.get(conversation_key(conversation_id))
        if raw is None:
            return None
        return self._load_conversation(raw)

    async def list_conversations(self) -> List[Conversation]:
        rows = await self.kv.scan_prefix(CONVERSATION_PREFIX.encode("utf-8"))
        conversations = [self._load_conversation(value) for _, value in rows]
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations

    async def append_message(self, conversation_id: str, role: str, content: str) -> str:
        if role not in VALID_ROLES:
            raise ValueError(f"Invalid message role: {role!r}")
        message = Message(
            id=uuid_str(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            timestamp=self._now(),
        )
        await self.kv.put(message_key(conversation_id, message.id), message.model_dump_json().encode("utf-8"))
        await self._touch(conversation_id)
        return message.id

    async def _touch(self, conversation_id: str) -> None:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("Message appended to missing conversation %s; nothing to bump", conversation_id)
            return
        conversation.updated_at = self._now()
        await self._put_conversation(conversation)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        rows = await self.kv.scan_prefix(message_prefix(conversation_id))
        messages = [self._load_message(value) for _, value in rows]
        messages.sort(key=lambda m: m.timestamp)
        return messages

    async def update_title(self, conversation_id: str, title: str) -> None:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        conversation.title = title
        conversation.updated_at = self._now()
        await self._put_conversation(conversation)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.kv.delete(conversation_key(conversation_id))
        keys = await self.kv.scan_keys(message_prefix(conversation_id))
        for key in keys:
            await self.kv.delete(key)
        logger.info("Deleted conversation %s and %d messages", conversation_id, len(keys))

    async def clear_all(self) -> None:
        await self.kv.clear()
        logger.warning("Cleared all conversations and messages")
