from __future__ import annotations

from dataclasses import dataclass, field
import os


TRUTHY_VALUES = {"1", "true", "yes", "on"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
STATE_FILE_NAME = "bot_state.json"


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY_VALUES


def env_int(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    text = raw.strip()
    if not text:
        return default
    try:
        return int(text)
    except ValueError as exc:
        raise ValueError(f"Invalid integer env {name}={raw!r}") from exc


def env_float(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    text = raw.strip()
    if not text:
        return default
    try:
        return float(text)
    except ValueError as exc:
        raise ValueError(f"Invalid number env {name}={raw!r}") from exc


def env_int_list(name: str) -> tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None:
        return ()
    values: list[int] = []
    for part in raw.split(","):
        text = part.strip()
        if not text:
            continue
        try:
            values.append(int(text))
        except ValueError as exc:
            raise ValueError(f"Invalid integer list env {name}={raw!r}") from exc
    return tuple(values)


@dataclass(frozen=True)
class BotConfig:
    discord_token: str
    database_url: str = ""
    bot_data_path: str = "data"
    db_echo: bool = False
    log_level: str = "INFO"
    log_dir: str = ""
    state_save_debounce_seconds: float = 5.0
    scheduler_stagger_seconds: float = 5.0
    state_reconcile_interval_seconds: float = 3600.0
    voice_checkpoint_interval_seconds: float = 60.0
    member_count_interval_seconds: float = 3600.0
    member_count_channel_id: int = 0
    interview_followup_interval_seconds: float = 300.0
    interview_first_warning_hours: float = 24.0
    interview_final_warning_hours: float = 24.0
    ingestion_host: str = "0.0.0.0"
    ingestion_port: int = 5000
    ingestion_path: str = "/webhook"
    interview_guild_id: int = 0
    interview_category_id: int = 0
    interview_admin_role_id: int = 0
    jtc_channel_ids: tuple[int, ...] = field(default_factory=tuple)
    afk_channel_id: int = 0
    shutdown_grace_seconds: float = 10.0

    @property
    def state_file_path(self) -> str:
        return os.path.join(self.bot_data_path, STATE_FILE_NAME)

    def validate(self) -> None:
        if self.state_save_debounce_seconds <= 0:
            raise ValueError("STATE_SAVE_DEBOUNCE_SECONDS must be > 0")
        if self.scheduler_stagger_seconds < 0:
            raise ValueError("SCHEDULER_STAGGER_SECONDS must be >= 0")
        for name, value in (
            ("STATE_RECONCILE_INTERVAL_SECONDS", self.state_reconcile_interval_seconds),
            ("VOICE_CHECKPOINT_INTERVAL_SECONDS", self.voice_checkpoint_interval_seconds),
            ("MEMBER_COUNT_INTERVAL_SECONDS", self.member_count_interval_seconds),
            ("INTERVIEW_FOLLOWUP_INTERVAL_SECONDS", self.interview_followup_interval_seconds),
        ):
            if value < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.interview_first_warning_hours <= 0 or self.interview_final_warning_hours <= 0:
            raise ValueError("INTERVIEW_FIRST_WARNING_HOURS/INTERVIEW_FINAL_WARNING_HOURS must be > 0")
        if not 0 <= self.ingestion_port <= 65535:
            raise ValueError("INGESTION_PORT must be between 0 and 65535")
        if not self.ingestion_path.startswith("/"):
            raise ValueError("INGESTION_PATH must start with '/'")
        if self.member_count_channel_id < 0 or self.afk_channel_id < 0:
            raise ValueError("Channel IDs must be >= 0")
        if self.interview_guild_id < 0 or self.interview_category_id < 0 or self.interview_admin_role_id < 0:
            raise ValueError("INTERVIEW_* IDs must be >= 0")
        if any(channel_id <= 0 for channel_id in self.jtc_channel_ids):
            raise ValueError("JTC_CHANNEL_IDS must contain positive IDs")
        if self.shutdown_grace_seconds < 0:
            raise ValueError("SHUTDOWN_GRACE_SECONDS must be >= 0")
        if self.log_level not in VALID_LOG_LEVELS:
            valid = ", ".join(sorted(VALID_LOG_LEVELS))
            raise ValueError(f"LOG_LEVEL must be one of: {valid}")


def load_config() -> BotConfig:
    cfg = BotConfig(
        discord_token=os.getenv("DISCORD_TOKEN", ""),
        database_url=os.getenv("DATABASE_URL", "").strip(),
        bot_data_path=os.getenv("BOT_DATA_PATH", "data").strip() or "data",
        db_echo=env_bool("DB_ECHO", default=False),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        log_dir=os.getenv("LOG_DIR", "").strip(),
        state_save_debounce_seconds=env_float("STATE_SAVE_DEBOUNCE_SECONDS", default=5.0),
        scheduler_stagger_seconds=env_float("SCHEDULER_STAGGER_SECONDS", default=5.0),
        state_reconcile_interval_seconds=env_float("STATE_RECONCILE_INTERVAL_SECONDS", default=3600.0),
        voice_checkpoint_interval_seconds=env_float("VOICE_CHECKPOINT_INTERVAL_SECONDS", default=60.0),
        member_count_interval_seconds=env_float("MEMBER_COUNT_INTERVAL_SECONDS", default=3600.0),
        member_count_channel_id=env_int("MEMBER_COUNT_CHANNEL_ID", default=0),
        interview_followup_interval_seconds=env_float("INTERVIEW_FOLLOWUP_INTERVAL_SECONDS", default=300.0),
        interview_first_warning_hours=env_float("INTERVIEW_FIRST_WARNING_HOURS", default=24.0),
        interview_final_warning_hours=env_float("INTERVIEW_FINAL_WARNING_HOURS", default=24.0),
        ingestion_host=os.getenv("INGESTION_HOST", "0.0.0.0").strip() or "0.0.0.0",
        ingestion_port=env_int("INGESTION_PORT", default=5000),
        ingestion_path=os.getenv("INGESTION_PATH", "/webhook").strip() or "/webhook",
        interview_guild_id=env_int("INTERVIEW_GUILD_ID", default=0),
        interview_category_id=env_int("INTERVIEW_CATEGORY_ID", default=0),
        interview_admin_role_id=env_int("INTERVIEW_ADMIN_ROLE_ID", default=0),
        jtc_channel_ids=env_int_list("JTC_CHANNEL_IDS"),
        afk_channel_id=env_int("AFK_CHANNEL_ID", default=0),
        shutdown_grace_seconds=env_float("SHUTDOWN_GRACE_SECONDS", default=10.0),
    )
    cfg.validate()
    return cfg
