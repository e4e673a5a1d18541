from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol, Sequence, TypeVar

from sqlalchemy import delete, insert, select, tuple_, update
from sqlalchemy.exc import SQLAlchemyError

from bot.config import BotConfig
from db.models import RuntimeStateEntry, RuntimeStateMeta
from db.session import SessionManager
from services.errors import PersistenceError
from services.state_models import (
    RuntimeStateSnapshot,
    StateCategory,
    decode_value,
    encode_value,
    snapshot_from_document,
    snapshot_to_document,
)


log = logging.getLogger("qutie.persistence")

_ChunkItem = TypeVar("_ChunkItem")
_RowKey = tuple[str, int]

_UINT64_SPAN = 1 << 64
_INT64_MAX = (1 << 63) - 1


class StatePersistence(Protocol):
    async def load(self) -> RuntimeStateSnapshot:
        ...

    async def save(self, snapshot: RuntimeStateSnapshot) -> None:
        ...


def _describe_counts(snapshot: RuntimeStateSnapshot) -> str:
    return ", ".join(f"{count} {name}" for name, count in snapshot.counts().items())


class JsonFileStatePersistence:
    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: BotConfig) -> JsonFileStatePersistence:
        return cls(config.state_file_path)

    async def load(self) -> RuntimeStateSnapshot:
        async with self._lock:
            if not self.path.exists():
                log.info("No existing state file found at %s, starting fresh", self.path)
                return RuntimeStateSnapshot()
            try:
                raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
                snapshot = snapshot_from_document(json.loads(raw))
            except (OSError, ValueError, TypeError, KeyError):
                log.exception("Failed to load state file %s, starting fresh", self.path)
                return RuntimeStateSnapshot()

        log.info("Loaded state: %s", _describe_counts(snapshot))
        return snapshot

    async def save(self, snapshot: RuntimeStateSnapshot) -> None:
        payload = json.dumps(snapshot_to_document(snapshot), indent=2)
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_atomic, payload)
            except OSError as exc:
                raise PersistenceError(f"Failed to write state file {self.path}") from exc
        log.debug("Bot state saved to %s", self.path)

    def _write_atomic(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        temp_path.write_text(payload, encoding="utf-8")
        os.replace(temp_path, self.path)


def _to_db_key(key: int) -> int:
    # Snowflake ids are unsigned 64-bit; BIGINT is signed.
    return key - _UINT64_SPAN if key > _INT64_MAX else key


def _from_db_key(key: int) -> int:
    return key + _UINT64_SPAN if key < 0 else key


class SqlStatePersistence:
    _DELETE_CHUNK_SIZE = 500
    _INSERT_CHUNK_SIZE = 500
    _UPDATE_CHUNK_SIZE = 500
    _META_ROW_ID = 1

    def __init__(self, config: BotConfig) -> None:
        self.session_manager = SessionManager(config)
        self._lock = asyncio.Lock()
        self._schema_ready = False
        self._last_flush_rows: dict[_RowKey, str] | None = None

    @staticmethod
    def _snapshot_rows(snapshot: RuntimeStateSnapshot) -> dict[_RowKey, str]:
        rows: dict[_RowKey, str] = {}
        for category in StateCategory:
            for key, value in snapshot.category(category).items():
                payload = json.dumps(encode_value(category, value), sort_keys=True)
                rows[(category.value, _to_db_key(int(key)))] = payload
        return rows

    @staticmethod
    def _stable_sort_key(value: object) -> str:
        return repr(value)

    @staticmethod
    def _iter_chunks(values: Sequence[_ChunkItem], chunk_size: int):
        for index in range(0, len(values), chunk_size):
            yield values[index : index + chunk_size]

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        await self.session_manager.create_schema()
        self._schema_ready = True

    async def load(self) -> RuntimeStateSnapshot:
        async with self._lock:
            try:
                await self._ensure_schema()
                async with self.session_manager.session_scope() as session:
                    result = await session.execute(
                        select(RuntimeStateEntry.category, RuntimeStateEntry.entry_key, RuntimeStateEntry.payload)
                    )
                    rows = result.all()
                    meta = await session.execute(
                        select(RuntimeStateMeta.last_saved).where(RuntimeStateMeta.id == self._META_ROW_ID)
                    )
                    last_saved = meta.scalar_one_or_none()
            except (SQLAlchemyError, OSError):
                log.exception("Failed to load runtime state from database, starting fresh")
                self._last_flush_rows = None
                return RuntimeStateSnapshot()

            snapshot = RuntimeStateSnapshot(last_saved=last_saved)
            for category_name, entry_key, payload in rows:
                try:
                    category = StateCategory(category_name)
                    snapshot.category(category)[_from_db_key(int(entry_key))] = decode_value(category, json.loads(payload))
                except (ValueError, TypeError, KeyError):
                    log.warning("Skipping unreadable state row category=%s key=%s", category_name, entry_key)

            self._last_flush_rows = {
                (str(category_name), int(entry_key)): str(payload)
                for category_name, entry_key, payload in rows
            }

        log.info("Loaded state: %s", _describe_counts(snapshot))
        return snapshot

    async def _apply_deletes(self, session: Any, removed_keys: list[_RowKey]) -> None:
        pk_expr = tuple_(RuntimeStateEntry.category, RuntimeStateEntry.entry_key)
        for key_chunk in self._iter_chunks(removed_keys, self._DELETE_CHUNK_SIZE):
            await session.execute(delete(RuntimeStateEntry).where(pk_expr.in_(key_chunk)))

    async def _apply_updates(self, session: Any, changed: list[dict[str, object]]) -> None:
        for payload_chunk in self._iter_chunks(changed, self._UPDATE_CHUNK_SIZE):
            await session.execute(update(RuntimeStateEntry), payload_chunk)

    async def _apply_inserts(self, session: Any, added: list[dict[str, object]]) -> None:
        for payload_chunk in self._iter_chunks(added, self._INSERT_CHUNK_SIZE):
            await session.execute(insert(RuntimeStateEntry), payload_chunk)

    async def save(self, snapshot: RuntimeStateSnapshot) -> None:
        current_rows = self._snapshot_rows(snapshot)
        async with self._lock:
            previous_rows = self._last_flush_rows
            try:
                await self._ensure_schema()
                async with self.session_manager.session_scope() as session:
                    if previous_rows is None:
                        # Unknown table contents: rewrite everything.
                        await session.execute(delete(RuntimeStateEntry))
                        previous_rows = {}

                    removed_keys = sorted(set(previous_rows) - set(current_rows), key=self._stable_sort_key)
                    changed = [
                        {"category": key[0], "entry_key": key[1], "payload": current_rows[key]}
                        for key in sorted(set(previous_rows) & set(current_rows), key=self._stable_sort_key)
                        if previous_rows[key] != current_rows[key]
                    ]
                    added = [
                        {"category": key[0], "entry_key": key[1], "payload": current_rows[key]}
                        for key in sorted(set(current_rows) - set(previous_rows), key=self._stable_sort_key)
                    ]

                    if removed_keys:
                        await self._apply_deletes(session, removed_keys)
                    if changed:
                        await self._apply_updates(session, changed)
                    if added:
                        await self._apply_inserts(session, added)

                    await session.execute(delete(RuntimeStateMeta))
                    await session.execute(
                        insert(RuntimeStateMeta),
                        [{"id": self._META_ROW_ID, "last_saved": snapshot.last_saved}],
                    )
            except (SQLAlchemyError, OSError) as exc:
                raise PersistenceError("Failed to write runtime state to database") from exc
            self._last_flush_rows = current_rows

        log.debug(
            "Runtime state flushed: removed=%s changed=%s added=%s",
            len(removed_keys),
            len(changed),
            len(added),
        )

    async def close(self) -> None:
        await self.session_manager.dispose()


def build_persistence(config: BotConfig) -> StatePersistence:
    if config.database_url:
        return SqlStatePersistence(config)
    return JsonFileStatePersistence.from_config(config)
