from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
import logging
from typing import Any, Callable, Iterable

import discord

from services.state_models import StateCategory, VoiceSessionState
from services.state_store import RuntimeStateStore


log = logging.getLogger("qutie.voice")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _channel_id(state: Any) -> int | None:
    channel = getattr(state, "channel", None) if state is not None else None
    return int(channel.id) if channel is not None else None


class VoiceStateTracker:
    """Maps voice state changes onto join-to-create children and voice sessions."""

    def __init__(
        self,
        store: RuntimeStateStore,
        *,
        join_to_create_channel_ids: Iterable[int] = (),
        afk_channel_id: int = 0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.join_to_create_channel_ids = frozenset(int(channel_id) for channel_id in join_to_create_channel_ids)
        self.afk_channel_id = int(afk_channel_id)
        self.clock = clock

    def _is_idle(self, state: Any) -> bool:
        if state is None or getattr(state, "channel", None) is None:
            return False
        return bool(getattr(state, "self_deaf", False)) or (
            bool(self.afk_channel_id) and int(state.channel.id) == self.afk_channel_id
        )

    async def on_voice_state_update(self, member: Any, before: Any, after: Any) -> None:
        if getattr(member, "bot", False):
            return
        before_id = _channel_id(before)
        after_id = _channel_id(after)
        if before_id != after_id:
            if after_id is not None and after_id in self.join_to_create_channel_ids:
                await self._create_child(member, after.channel)
            if before_id is not None:
                await self._cleanup_child(before.channel)
        await self._track_session(member, after_id, after)

    async def _create_child(self, member: Any, target: Any) -> None:
        guild = member.guild
        overwrites = {member: discord.PermissionOverwrite(manage_channels=True, move_members=True)}
        channel = await guild.create_voice_channel(
            f"{member.display_name}'s Channel",
            category=getattr(target, "category", None),
            overwrites=overwrites,
            reason=f"Auto-created for {member.name}",
        )
        await self.store.add_child(int(target.id), int(channel.id))
        await member.move_to(channel)
        log.info("Created voice channel %s (%s) for user %s", channel.id, channel.name, member.id)

    async def _cleanup_child(self, channel: Any) -> None:
        channel_id = int(channel.id)
        parent_id = next(
            (
                parent_id
                for parent_id, children in self.store.get_category(StateCategory.CREATED_CHILDREN).items()
                if channel_id in children
            ),
            None,
        )
        if parent_id is None or list(getattr(channel, "members", [])):
            return
        try:
            await channel.delete(reason="Join-to-create channel empty")
        except discord.NotFound:
            log.debug("Join-to-create channel %s already deleted", channel_id)
        await self.store.remove_child(parent_id, channel_id)
        log.info("%s channel was empty and has been deleted", getattr(channel, "name", channel_id))

    async def _track_session(self, member: Any, after_id: int | None, after: Any) -> None:
        user_id = int(member.id)
        if after_id is None or self._is_idle(after):
            if await self.store.remove(StateCategory.ACTIVE_SESSIONS_B, user_id):
                log.info("Voice session closed for user %s", user_id)
            return

        now = self.clock()
        session = self.store.get(StateCategory.ACTIVE_SESSIONS_B, user_id)
        if session is None:
            await self.store.upsert(
                StateCategory.ACTIVE_SESSIONS_B,
                user_id,
                VoiceSessionState(start_time=now, last_checkpoint=now, channel_id=after_id),
            )
            log.info("Voice session started for user %s in channel %s", user_id, after_id)
        elif session.channel_id != after_id:
            await self.store.upsert(
                StateCategory.ACTIVE_SESSIONS_B,
                user_id,
                replace(session, channel_id=after_id, last_checkpoint=now),
            )
            log.debug("User %s switched channels, checkpoint recorded", user_id)

    async def sync_from_guilds(self, guilds: Iterable[Any]) -> int:
        """Rebuild voice sessions from the members currently connected."""
        now = self.clock()
        current = self.store.get_category(StateCategory.ACTIVE_SESSIONS_B)
        sessions: dict[int, VoiceSessionState] = {}
        for guild in guilds:
            for channel in getattr(guild, "voice_channels", []):
                if self.afk_channel_id and int(channel.id) == self.afk_channel_id:
                    continue
                for member in channel.members:
                    voice = getattr(member, "voice", None)
                    if member.bot or (voice is not None and voice.self_deaf):
                        continue
                    user_id = int(member.id)
                    existing = current.get(user_id)
                    if existing is not None:
                        sessions[user_id] = replace(existing, channel_id=int(channel.id))
                    else:
                        sessions[user_id] = VoiceSessionState(
                            start_time=now,
                            last_checkpoint=now,
                            channel_id=int(channel.id),
                        )
        await self.store.replace_category(StateCategory.ACTIVE_SESSIONS_B, sessions)
        log.info("Voice sessions synced: %s active (%s restored)", len(sessions), len(set(sessions) & set(current)))
        return len(sessions)
