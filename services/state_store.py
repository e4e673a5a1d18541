from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import logging
from typing import Any, Callable, Mapping

from bot.task_registry import DebouncedFlusher
from services.persistence_service import StatePersistence
from services.state_models import RuntimeStateSnapshot, StateCategory, normalize_value


log = logging.getLogger("qutie.store")

DEFAULT_SAVE_DEBOUNCE_SECONDS = 5.0

_MISSING = object()


class RuntimeStateStore:
    """Single owner of the runtime state snapshot.

    Mutations are serialized by one lock and persisted through a trailing debounce;
    the debounced flush copies the live snapshot under the same lock when it fires.
    Readers always get copies, never the internal mappings.
    """

    def __init__(
        self,
        persistence: StatePersistence,
        *,
        debounce_seconds: float = DEFAULT_SAVE_DEBOUNCE_SECONDS,
    ) -> None:
        self.persistence = persistence
        self._snapshot = RuntimeStateSnapshot()
        self._initialized = False
        self._shut_down = False
        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._flusher = DebouncedFlusher(self._flush_debounced, debounce_seconds=debounce_seconds)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def last_saved(self) -> datetime | None:
        return self._snapshot.last_saved

    @property
    def pending_save(self) -> bool:
        return self._flusher.pending

    @property
    def shut_down(self) -> bool:
        return self._shut_down

    async def initialize(self) -> None:
        async with self._lock:
            if self._initialized:
                log.warning("Runtime state store already initialized")
                return
            self._snapshot = await self.persistence.load()
            self._initialized = True
            counts = self._snapshot.counts()
        log.info(
            "Runtime state store initialized: %s",
            ", ".join(f"{name}={count}" for name, count in counts.items()),
        )

    def get_category(self, category: StateCategory | str) -> dict[int, Any]:
        return dict(self._snapshot.category(StateCategory(category)))

    def get(self, category: StateCategory | str, key: int, default: Any = None) -> Any:
        return self._snapshot.category(StateCategory(category)).get(int(key), default)

    async def upsert(self, category: StateCategory | str, key: int, value: object) -> None:
        category = StateCategory(category)
        normalized = normalize_value(category, value)
        async with self._lock:
            self._snapshot.category(category)[int(key)] = normalized
        self.save_debounced()

    async def remove(self, category: StateCategory | str, key: int) -> bool:
        category = StateCategory(category)
        async with self._lock:
            removed = self._snapshot.category(category).pop(int(key), _MISSING) is not _MISSING
        if removed:
            self.save_debounced()
        return removed

    async def replace_category(self, category: StateCategory | str, entries: Mapping[int, object]) -> None:
        category = StateCategory(category)
        normalized = {int(key): normalize_value(category, value) for key, value in entries.items()}
        async with self._lock:
            self._snapshot.replace(category, normalized)
        self.save_debounced()

    async def transform_category(
        self,
        category: StateCategory | str,
        transform: Callable[[dict[int, Any]], Mapping[int, object] | None],
    ) -> bool:
        """Apply ``transform`` to a working copy and publish its result atomically.

        ``transform`` returns None to leave the category untouched; no save is scheduled then.
        """
        category = StateCategory(category)
        async with self._lock:
            result = transform(dict(self._snapshot.category(category)))
            if result is None:
                return False
            normalized = {int(key): normalize_value(category, value) for key, value in result.items()}
            self._snapshot.replace(category, normalized)
        self.save_debounced()
        return True

    async def add_child(self, parent_id: int, child_id: int) -> bool:
        parent_id, child_id = int(parent_id), int(child_id)
        async with self._lock:
            children = self._snapshot.created_children.get(parent_id, frozenset())
            if child_id in children:
                return False
            self._snapshot.created_children[parent_id] = children | {child_id}
        self.save_debounced()
        return True

    async def remove_child(self, parent_id: int, child_id: int) -> bool:
        parent_id, child_id = int(parent_id), int(child_id)
        async with self._lock:
            children = self._snapshot.created_children.get(parent_id)
            if children is None or child_id not in children:
                return False
            remaining = children - {child_id}
            if remaining:
                self._snapshot.created_children[parent_id] = remaining
            else:
                del self._snapshot.created_children[parent_id]
        self.save_debounced()
        return True

    def save_debounced(self) -> None:
        if self._shut_down:
            log.warning("Runtime state changed after shutdown; the change will not be persisted")
            return
        self._flusher.mark_dirty()

    async def save_now(self) -> datetime:
        return await self._write()

    async def shutdown(self) -> None:
        self._flusher.cancel()
        self._shut_down = True
        if not self._initialized:
            log.warning("Runtime state store was never initialized; skipping final save")
            return
        saved_at = await self.save_now()
        log.info("Runtime state saved at shutdown (%s)", saved_at.isoformat())

    async def _write(self) -> datetime:
        async with self._write_lock:
            saved_at = datetime.now(UTC)
            async with self._lock:
                snapshot = self._snapshot.copy()
            snapshot.last_saved = saved_at
            await self.persistence.save(snapshot)
            async with self._lock:
                self._snapshot.last_saved = saved_at
        return saved_at

    async def _flush_debounced(self) -> None:
        try:
            await self._write()
        except Exception:
            log.exception("Debounced runtime state save failed; the next change will retry")
