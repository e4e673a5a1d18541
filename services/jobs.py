from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
import logging
from typing import Any, Callable, Protocol

from bot.config import BotConfig
from services.errors import TaskError
from services.scheduler import ScheduledTask, chain_steps
from services.state_models import InterviewTimerState, StateCategory, TimerStage
from services.state_store import RuntimeStateStore


log = logging.getLogger("qutie.jobs")

Clock = Callable[[], datetime]

STATE_RECONCILE_TASK = "state_reconcile"
VOICE_CHECKPOINT_TASK = "voice_checkpoint"
MEMBER_COUNT_TASK = "member_count"
INTERVIEW_FOLLOWUP_TASK = "interview_followup"


def utc_now() -> datetime:
    return datetime.now(UTC)


class ChannelSource(Protocol):
    async def fetch_channel_ids(self) -> set[int]:
        ...


class InterviewNotifier(Protocol):
    async def first_warning(self, timer: InterviewTimerState) -> None:
        ...

    async def close_interview(self, timer: InterviewTimerState) -> None:
        ...


class DiscordChannelSource:
    def __init__(self, client: Any) -> None:
        self.client = client

    async def fetch_channel_ids(self) -> set[int]:
        # An unready client reports no guilds; treating that as "no channels" would wipe state.
        if not self.client.is_ready():
            raise TaskError("Discord client is not ready")
        channel_ids: set[int] = set()
        for guild in list(self.client.guilds):
            channels = await guild.fetch_channels()
            channel_ids.update(int(channel.id) for channel in channels)
        return channel_ids


class StateReconciler:
    """Drops store entries that point at channels which no longer exist."""

    def __init__(self, store: RuntimeStateStore, channel_source: ChannelSource) -> None:
        self.store = store
        self.channel_source = channel_source
        self._live_channel_ids: set[int] | None = None

    async def refresh(self) -> None:
        self._live_channel_ids = None
        self._live_channel_ids = await self.channel_source.fetch_channel_ids()
        log.debug("Fetched %s live channel ids", len(self._live_channel_ids))

    async def evaluate(self) -> int:
        live = self._live_channel_ids
        self._live_channel_ids = None
        if live is None:
            log.debug("Skipping state reconcile without fresh channel data")
            return 0

        removed = 0

        def _children(entries: dict[int, Any]) -> dict[int, Any] | None:
            nonlocal removed
            kept: dict[int, Any] = {}
            for parent_id, children in entries.items():
                if parent_id not in live:
                    removed += 1
                    continue
                alive = frozenset(child for child in children if child in live)
                removed += len(children) - len(alive)
                if alive:
                    kept[parent_id] = alive
            return kept if kept != entries else None

        def _keyed_by_channel(entries: dict[int, Any]) -> dict[int, Any] | None:
            nonlocal removed
            kept = {key: value for key, value in entries.items() if key in live}
            removed += len(entries) - len(kept)
            return kept if len(kept) != len(entries) else None

        def _by_value_channel(entries: dict[int, Any]) -> dict[int, Any] | None:
            nonlocal removed
            kept = {key: value for key, value in entries.items() if int(value.channel_id) in live}
            removed += len(entries) - len(kept)
            return kept if len(kept) != len(entries) else None

        await self.store.transform_category(StateCategory.CREATED_CHILDREN, _children)
        await self.store.transform_category(StateCategory.TIMERS, _keyed_by_channel)
        await self.store.transform_category(StateCategory.ACTIVE_SESSIONS_A, _by_value_channel)
        await self.store.transform_category(StateCategory.ACTIVE_SESSIONS_B, _by_value_channel)

        if removed:
            log.info("State reconcile removed %s stale entries", removed)
        return removed


class VoiceCheckpointJob:
    def __init__(self, store: RuntimeStateStore, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def tick(self) -> None:
        now = self.clock()

        def _checkpoint(sessions: dict[int, Any]) -> dict[int, Any] | None:
            if not sessions:
                return None
            return {user_id: replace(session, last_checkpoint=now) for user_id, session in sessions.items()}

        if await self.store.transform_category(StateCategory.ACTIVE_SESSIONS_B, _checkpoint):
            log.debug("Voice sessions checkpointed at %s", now.isoformat())


class MemberCountJob:
    def __init__(self, client: Any, channel_id: int) -> None:
        self.client = client
        self.channel_id = int(channel_id)

    @staticmethod
    def channel_name(member_count: int) -> str:
        return f"Members: {member_count}"

    async def tick(self) -> None:
        if not self.client.is_ready():
            raise TaskError("Discord client is not ready")
        for guild in list(self.client.guilds):
            channel = guild.get_channel(self.channel_id)
            if channel is None:
                continue
            name = self.channel_name(int(guild.member_count or 0))
            if channel.name == name:
                continue
            await channel.edit(name=name, reason="Member count update")
            log.info("Member count channel updated for guild %s: %s", guild.id, name)


class InterviewFollowUpJob:
    def __init__(
        self,
        store: RuntimeStateStore,
        notifier: InterviewNotifier,
        *,
        first_warning_hours: float = 24.0,
        final_warning_hours: float = 24.0,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.first_warning_after = timedelta(hours=first_warning_hours)
        self.final_warning_after = timedelta(hours=final_warning_hours)
        self.clock = clock

    async def tick(self) -> None:
        now = self.clock()
        for channel_id, timer in sorted(self.store.get_category(StateCategory.TIMERS).items()):
            if timer.is_paused:
                continue
            try:
                await self._advance(channel_id, timer, now)
            except Exception:
                log.exception("Interview follow-up failed for channel %s", channel_id)

    async def _advance(self, channel_id: int, timer: InterviewTimerState, now: datetime) -> None:
        if timer.stage is TimerStage.WAITING_FIRST_WARNING:
            if now - timer.start_time < self.first_warning_after:
                return
            await self.notifier.first_warning(timer)
            await self.store.upsert(
                StateCategory.TIMERS,
                channel_id,
                replace(timer, stage=TimerStage.WAITING_FINAL_WARNING, first_warning_sent_at=now),
            )
            log.info("First interview warning sent for channel %s (user %s)", channel_id, timer.user_id)
            return

        if timer.stage is TimerStage.WAITING_FINAL_WARNING:
            warned_at = timer.first_warning_sent_at or timer.start_time + self.first_warning_after
            if now - warned_at < self.final_warning_after:
                return
            timer = replace(timer, stage=TimerStage.EXPIRED)
            await self.store.upsert(StateCategory.TIMERS, channel_id, timer)

        await self.notifier.close_interview(timer)
        await self.store.remove(StateCategory.TIMERS, channel_id)
        session = self.store.get(StateCategory.ACTIVE_SESSIONS_A, timer.user_id)
        if session is not None and int(session.channel_id) == channel_id:
            await self.store.remove(StateCategory.ACTIVE_SESSIONS_A, timer.user_id)
        log.info("Interview channel %s closed for user %s after no response", channel_id, timer.user_id)


def build_scheduled_tasks(
    config: BotConfig,
    *,
    store: RuntimeStateStore,
    client: Any,
    notifier: InterviewNotifier | None = None,
    clock: Clock = utc_now,
) -> list[ScheduledTask]:
    reconciler = StateReconciler(store, DiscordChannelSource(client))
    tasks = [
        ScheduledTask(
            STATE_RECONCILE_TASK,
            config.state_reconcile_interval_seconds,
            chain_steps(reconciler.refresh, reconciler.evaluate),
        ),
        ScheduledTask(
            VOICE_CHECKPOINT_TASK,
            config.voice_checkpoint_interval_seconds,
            VoiceCheckpointJob(store, clock=clock).tick,
        ),
    ]
    if config.member_count_channel_id:
        tasks.append(
            ScheduledTask(
                MEMBER_COUNT_TASK,
                config.member_count_interval_seconds,
                MemberCountJob(client, config.member_count_channel_id).tick,
            )
        )
    if notifier is not None:
        followup = InterviewFollowUpJob(
            store,
            notifier,
            first_warning_hours=config.interview_first_warning_hours,
            final_warning_hours=config.interview_final_warning_hours,
            clock=clock,
        )
        tasks.append(ScheduledTask(INTERVIEW_FOLLOWUP_TASK, config.interview_followup_interval_seconds, followup.tick))
    return tasks
