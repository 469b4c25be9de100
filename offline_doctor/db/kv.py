"""Ordered byte-key / byte-value store on top of a single SQLite table."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from offline_doctor.core.errors import StorageError
from offline_doctor.db.models import KVEntry
from offline_doctor.db.session import create_engine_for, make_sessionmaker

logger = logging.getLogger(__name__)


def prefix_upper_bound(prefix: bytes) -> Optional[bytes]:
    """Smallest key greater than every key starting with `prefix`, or None if unbounded."""
    stripped = prefix.rstrip(b"\xff")
    if not stripped:
        return None
    return stripped[:-1] + bytes([stripped[-1] + 1])


class OrderedKVStore:
    """Point get/put/delete, prefix scan in key order, clear.

    Every call runs in its own transaction, so single-key operations are
    atomic and multi-key sequences are not.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions = make_sessionmaker(engine)

    @classmethod
    async def open(cls, path: Path) -> "OrderedKVStore":
        try:
            engine = await create_engine_for(path)
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to open store at {path}: {e}") from e
        logger.info("Opened key-value store at %s", path)
        return cls(engine)

    async def close(self) -> None:
        await self._engine.dispose()

    async def get(self, key: bytes) -> Optional[bytes]:
        try:
            async with self._sessions() as session:
                entry = await session.get(KVEntry, key)
                return entry.value if entry is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"get failed: {e}") from e

    async def put(self, key: bytes, value: bytes) -> None:
        stmt = insert(KVEntry).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(index_elements=[KVEntry.key], set_={"value": value})
        try:
            async with self._sessions() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"put failed: {e}") from e

    async def delete(self, key: bytes) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(delete(KVEntry).where(KVEntry.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"delete failed: {e}") from e

    async def scan_prefix(self, prefix: bytes) -> List[Tuple[bytes, bytes]]:
        stmt = select(KVEntry.key, KVEntry.value).where(KVEntry.key >= prefix)
        upper = prefix_upper_bound(prefix)
        if upper is not None:
            stmt = stmt.where(KVEntry.key < upper)
        stmt = stmt.order_by(KVEntry.key)
        try:
            async with self._sessions() as session:
                rows = await session.execute(stmt)
                return [(bytes(k), bytes(v)) for k, v in rows.all()]
        except SQLAlchemyError as e:
            raise StorageError(f"prefix scan failed: {e}") from e

    async def scan_keys(self, prefix: bytes) -> List[bytes]:
        stmt = select(KVEntry.key).where(KVEntry.key >= prefix)
        upper = prefix_upper_bound(prefix)
        if upper is not None:
            stmt = stmt.where(KVEntry.key < upper)
        stmt = stmt.order_by(KVEntry.key)
        try:
            async with self._sessions() as session:
                rows = await session.execute(stmt)
                return [bytes(k) for k in rows.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"key scan failed: {e}") from e

    async def clear(self) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(delete(KVEntry))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"clear failed: {e}") from e
