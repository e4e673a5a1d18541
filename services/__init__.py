from services.persistence_service import (
    JsonFileStatePersistence,
    SqlStatePersistence,
    StatePersistence,
    build_persistence,
)
from services.state_models import (
    InterviewDataState,
    InterviewTimerState,
    RuntimeStateSnapshot,
    StateCategory,
    TimerStage,
    VoiceSessionState,
)
from services.state_store import RuntimeStateStore

__all__ = [
    "InterviewDataState",
    "InterviewTimerState",
    "JsonFileStatePersistence",
    "RuntimeStateSnapshot",
    "RuntimeStateStore",
    "SqlStatePersistence",
    "StateCategory",
    "StatePersistence",
    "TimerStage",
    "VoiceSessionState",
    "build_persistence",
]
