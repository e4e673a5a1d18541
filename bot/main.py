from __future__ import annotations

import asyncio
import logging
from typing import Any

from bot.config import BotConfig
from bot.task_registry import SingletonTaskRegistry
from services.errors import PersistenceError
from services.ingestion import IngestionListener
from services.interview_service import InterviewReminderNotifier, InterviewRoomWorkflow
from services.jobs import build_scheduled_tasks
from services.scheduler import TaskScheduler
from services.state_store import RuntimeStateStore
from services.voice_service import VoiceStateTracker


log = logging.getLogger("qutie.app")

INGESTION_TASK_NAME = "ingestion_listener"


class BotApplication:
    def __init__(
        self,
        *,
        config: BotConfig,
        store: RuntimeStateStore,
        client: Any,
    ) -> None:
        self.config = config
        self.store = store
        self.client = client

        self.stop_event = asyncio.Event()
        self.task_registry = SingletonTaskRegistry()

        self.workflow = InterviewRoomWorkflow(
            client,
            store,
            guild_id=config.interview_guild_id,
            category_id=config.interview_category_id,
            admin_role_id=config.interview_admin_role_id,
        )
        self.notifier = InterviewReminderNotifier(
            client,
            final_warning_hours=config.interview_final_warning_hours,
            total_hours=config.interview_first_warning_hours + config.interview_final_warning_hours,
        )
        self.voice_tracker = VoiceStateTracker(
            store,
            join_to_create_channel_ids=config.jtc_channel_ids,
            afk_channel_id=config.afk_channel_id,
        )
        self.listener = IngestionListener(
            self.workflow,
            host=config.ingestion_host,
            port=config.ingestion_port,
            path=config.ingestion_path,
        )
        self.scheduler = TaskScheduler(self.stop_event, stagger_seconds=config.scheduler_stagger_seconds)
        for task in build_scheduled_tasks(config, store=store, client=client, notifier=self.notifier):
            self.scheduler.add(task)

        self.final_save_error: PersistenceError | None = None
        self._voice_synced = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def setup(self) -> None:
        await self.store.initialize()
        self.task_registry.start_once(INGESTION_TASK_NAME, lambda: self.listener.serve(self.stop_event))

    async def on_ready(self) -> None:
        if self._closed:
            return
        if not self._voice_synced:
            try:
                await self.voice_tracker.sync_from_guilds(list(self.client.guilds))
                self._voice_synced = True
            except Exception:
                log.exception("Voice session sync failed")
        self.scheduler.start()
        log.info("Scheduled tasks running: %s", ", ".join(self.scheduler.task_names))

    async def handle_voice_state_update(self, member: Any, before: Any, after: Any) -> None:
        if self._closed:
            return
        try:
            await self.voice_tracker.on_voice_state_update(member, before, after)
        except Exception:
            log.exception("Voice state update failed for user %s", getattr(member, "id", None))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        grace = self.config.shutdown_grace_seconds
        log.info("Shutting down")

        self.stop_event.set()
        await self.scheduler.stop(timeout=grace)
        stragglers = await self.task_registry.wait_all(grace)
        if stragglers:
            log.warning("Tasks did not stop in %.1fs, cancelling: %s", grace, ", ".join(stragglers))
            await self.task_registry.cancel_all()

        try:
            await self.store.shutdown()
        except PersistenceError as exc:
            self.final_save_error = exc
            log.exception("Final runtime state save failed")
        finally:
            close_persistence = getattr(self.store.persistence, "close", None)
            if close_persistence is not None:
                await close_persistence()
