from __future__ import annotations

import asyncio
import logging
import os
import signal

import discord

from bot.config import BotConfig, load_config
from bot.logging_setup import setup_logging
from bot.main import BotApplication
from services.persistence_service import build_persistence
from services.state_store import RuntimeStateStore


log = logging.getLogger("qutie.runtime")


class QutieDiscordBot(discord.Client):
    def __init__(self, config: BotConfig, store: RuntimeStateStore) -> None:
        intents = discord.Intents.default()
        intents.members = True
        intents.voice_states = True
        super().__init__(intents=intents)

        self.config = config
        self.app = BotApplication(config=config, store=store, client=self)
        self.shutdown_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        await self.app.setup()

    async def on_ready(self) -> None:
        await self.app.on_ready()
        log.info("Bot ready as %s", self.user)

    async def on_voice_state_update(self, member, before, after) -> None:
        await self.app.handle_voice_state_update(member, before, after)

    async def close(self) -> None:
        try:
            await self.app.close()
        finally:
            await super().close()


def _install_signal_handlers(bot: QutieDiscordBot) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, _request_shutdown, bot, signum)
        except (NotImplementedError, RuntimeError):
            log.debug("Signal handler for %s not supported on this platform", signum)


def _request_shutdown(bot: QutieDiscordBot, signum: int) -> None:
    log.warning("Received signal %s, shutting down.", signal.Signals(signum).name)
    if bot.shutdown_task is None or bot.shutdown_task.done():
        bot.shutdown_task = asyncio.get_running_loop().create_task(bot.close(), name="shutdown")


async def _run_bot(config: BotConfig) -> int:
    store = RuntimeStateStore(
        build_persistence(config),
        debounce_seconds=config.state_save_debounce_seconds,
    )
    bot = QutieDiscordBot(config, store)
    async with bot:
        _install_signal_handlers(bot)
        await bot.start(config.discord_token)
    await bot.app.close()

    if bot.app.final_save_error is not None:
        log.error("Exiting with failed final state save: %s", bot.app.final_save_error)
        return 1
    return 0


def run() -> int:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    try:
        config = load_config()
    except ValueError as exc:
        log.error("Config error: %s", exc)
        return 1

    setup_logging(config.log_level, config.log_dir, db_echo=config.db_echo)
    if not config.discord_token:
        log.error("DISCORD_TOKEN missing")
        return 1

    try:
        return asyncio.run(_run_bot(config))
    except discord.LoginFailure:
        log.error("Discord login failed: check DISCORD_TOKEN")
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(run())
