from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
import logging
import re
from typing import Any, Callable

import discord

from services.errors import WorkflowError
from services.state_models import InterviewDataState, InterviewTimerState, StateCategory
from services.state_store import RuntimeStateStore


log = logging.getLogger("qutie.interview")

SUBMISSION_URL_TEMPLATE = "https://quintessence-eu.com/menu/submissions/{submission_id}"
INTERVIEW_CHANNEL_SUFFIX = "-interview"
MAX_CHANNEL_NAME_LENGTH = 100
CLOSE_DELAY_SECONDS = 10.0
EMBED_FOOTER = "Quintessence Application System"

_CHANNEL_NAME_INVALID = re.compile(r"[^a-z0-9_-]+")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def interview_channel_name(display_name: str | None) -> str:
    base = _CHANNEL_NAME_INVALID.sub("-", (display_name or "").strip().lower()).strip("-")
    base = re.sub(r"-{2,}", "-", base) or "applicant"
    return f"{base[: MAX_CHANNEL_NAME_LENGTH - len(INTERVIEW_CHANNEL_SUFFIX)]}{INTERVIEW_CHANNEL_SUFFIX}"


def _applicant_overwrite() -> discord.PermissionOverwrite:
    return discord.PermissionOverwrite(
        view_channel=True,
        send_messages=True,
        read_message_history=True,
        add_reactions=True,
        use_external_emojis=True,
        use_external_stickers=True,
        embed_links=True,
        attach_files=True,
        use_application_commands=True,
        send_messages_in_threads=True,
        create_public_threads=True,
        create_private_threads=True,
    )


def _admin_overwrite() -> discord.PermissionOverwrite:
    overwrite = _applicant_overwrite()
    overwrite.update(
        manage_channels=True,
        manage_threads=True,
        manage_messages=True,
        mention_everyone=True,
        manage_roles=True,
    )
    return overwrite


class InterviewRoomWorkflow:
    """Creates one private interview channel per applicant and records it in the runtime state."""

    def __init__(
        self,
        client: Any,
        store: RuntimeStateStore,
        *,
        guild_id: int = 0,
        category_id: int = 0,
        admin_role_id: int = 0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.client = client
        self.store = store
        self.guild_id = int(guild_id)
        self.category_id = int(category_id)
        self.admin_role_id = int(admin_role_id)
        self.clock = clock
        self._user_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _resolve_guild(self) -> Any:
        if self.guild_id:
            guild = self.client.get_guild(self.guild_id)
        else:
            guild = next(iter(self.client.guilds), None)
        if guild is None:
            raise WorkflowError("No guild available for interview rooms")
        return guild

    async def _resolve_member(self, guild: Any, user_id: int) -> Any:
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.HTTPException as exc:
            raise WorkflowError(f"Could not find user {user_id} in guild {guild.id}") from exc

    def _resolve_category(self, guild: Any) -> Any | None:
        if not self.category_id:
            return None
        category = guild.get_channel(self.category_id)
        if category is None or getattr(category, "type", None) != discord.ChannelType.category:
            raise WorkflowError(f"Category channel {self.category_id} not found or is not a category")
        return category

    async def trigger(self, user_id: int, submission_id: int) -> int:
        user_id = int(user_id)
        async with self._user_locks[user_id]:
            existing = self.store.get(StateCategory.ACTIVE_SESSIONS_A, user_id)
            if existing is not None:
                log.warning("User %s already has an active interview room: %s", user_id, existing.channel_id)
                return int(existing.channel_id)

            guild = self._resolve_guild()
            member = await self._resolve_member(guild, user_id)
            category = self._resolve_category(guild)

            overwrites: dict[Any, discord.PermissionOverwrite] = {
                guild.default_role: discord.PermissionOverwrite(view_channel=False),
                member: _applicant_overwrite(),
            }
            admin_role = guild.get_role(self.admin_role_id) if self.admin_role_id else None
            if admin_role is not None:
                overwrites[admin_role] = _admin_overwrite()
            elif self.admin_role_id:
                log.warning("Admin role %s not found in guild %s", self.admin_role_id, guild.id)

            submission_url = SUBMISSION_URL_TEMPLATE.format(submission_id=submission_id)
            try:
                channel = await guild.create_text_channel(
                    interview_channel_name(getattr(member, "display_name", None)),
                    category=category,
                    overwrites=overwrites,
                    topic=f"[View Application](<{submission_url}>)",
                    reason="Interview room created for application",
                )
            except discord.HTTPException as exc:
                raise WorkflowError(f"Could not create interview channel for user {user_id}") from exc

            now = self.clock()
            await self.store.upsert(
                StateCategory.ACTIVE_SESSIONS_A,
                user_id,
                InterviewDataState(
                    user_id=user_id,
                    channel_id=int(channel.id),
                    submission_id=int(submission_id),
                    created_at=now,
                ),
            )
            await self.store.upsert(
                StateCategory.TIMERS,
                int(channel.id),
                InterviewTimerState(
                    channel_id=int(channel.id),
                    user_id=user_id,
                    admin_id=0,
                    start_time=now,
                ),
            )
            log.info("Created interview channel %s for user %s", channel.id, user_id)

            await self._send_welcome(channel, member, admin_role)
            return int(channel.id)

    async def _send_welcome(self, channel: Any, member: Any, admin_role: Any | None) -> None:
        team = admin_role.mention if admin_role is not None else "staff"
        embed = discord.Embed(
            title="🎉 Welcome to Quintessence!",
            description=f"Thank you for your interest in joining our community, {member.mention}!",
            color=discord.Color.blurple(),
        )
        embed.add_field(
            name="Next Steps",
            value=(
                "If you have any questions about our community or your application, please feel free to ask here. "
                f"One of our {team} team members will review your submission and get back to you shortly."
            ),
            inline=False,
        )
        embed.set_footer(text=EMBED_FOOTER)
        try:
            await channel.send(content=member.mention, embed=embed)
        except discord.HTTPException:
            log.warning("Could not send welcome message to interview channel %s", channel.id, exc_info=True)


class InterviewReminderNotifier:
    """Posts follow-up reminders into interview channels and closes them on timeout."""

    def __init__(
        self,
        client: Any,
        *,
        final_warning_hours: float = 24.0,
        total_hours: float = 48.0,
        close_delay_seconds: float = CLOSE_DELAY_SECONDS,
    ) -> None:
        self.client = client
        self.final_warning_hours = final_warning_hours
        self.total_hours = total_hours
        self.close_delay_seconds = close_delay_seconds

    async def first_warning(self, timer: InterviewTimerState) -> None:
        channel = self.client.get_channel(timer.channel_id)
        if channel is None:
            raise WorkflowError(f"Interview channel {timer.channel_id} not found")
        embed = discord.Embed(
            title="⚠️ Application Follow-Up",
            description=(
                f"<@{timer.user_id}> Hope you are doing well! We have not yet received a response from you "
                "regarding your application.\n\n"
                "Your application will be denied and this ticket will be closed if we don't hear from you "
                f"in the next **{self.final_warning_hours:g} hours**.\n\n"
                "Please let us know your availability for an interview or if you have any questions."
            ),
            color=discord.Color.orange(),
            timestamp=datetime.now(UTC),
        )
        embed.set_footer(text=EMBED_FOOTER)
        await channel.send(
            content=f"<@{timer.user_id}>",
            embed=embed,
            allowed_mentions=discord.AllowedMentions.all(),
        )

    async def close_interview(self, timer: InterviewTimerState) -> None:
        channel = self.client.get_channel(timer.channel_id)
        if channel is None:
            log.info("Interview channel %s already gone", timer.channel_id)
            return
        embed = discord.Embed(
            title="❌ Application Denied - No Response",
            description=(
                f"This application has been automatically denied due to lack of response from <@{timer.user_id}>.\n\n"
                f"The applicant did not respond within the required {self.total_hours:g}-hour timeframe.\n\n"
                f"This channel will be deleted in {self.close_delay_seconds:g} seconds."
            ),
            color=discord.Color.red(),
            timestamp=datetime.now(UTC),
        )
        embed.set_footer(text=EMBED_FOOTER)
        await channel.send(
            content=f"<@{timer.user_id}>",
            embed=embed,
            allowed_mentions=discord.AllowedMentions.all(),
        )
        await asyncio.sleep(self.close_delay_seconds)
        await channel.delete(reason="Interview closed automatically - no response from applicant")
