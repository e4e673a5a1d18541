from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterable, Mapping


class StateCategory(str, Enum):
    CREATED_CHILDREN = "created-children"
    TIMERS = "timers"
    ACTIVE_SESSIONS_A = "active-sessions-a"
    ACTIVE_SESSIONS_B = "active-sessions-b"


class TimerStage(str, Enum):
    WAITING_FIRST_WARNING = "waiting_first_warning"
    WAITING_FINAL_WARNING = "waiting_final_warning"
    EXPIRED = "expired"


def _encode_dt(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def _decode_dt(raw: object) -> datetime | None:
    if raw is None or raw == "":
        return None
    value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _require_dt(raw: object, name: str) -> datetime:
    value = _decode_dt(raw)
    if value is None:
        raise ValueError(f"{name} is required")
    return value


@dataclass(frozen=True, slots=True)
class InterviewTimerState:
    channel_id: int
    user_id: int
    admin_id: int
    start_time: datetime
    first_warning_sent_at: datetime | None = None
    stage: TimerStage = TimerStage.WAITING_FIRST_WARNING
    is_paused: bool = False

    def to_payload(self) -> dict[str, object]:
        return {
            "channelId": self.channel_id,
            "userId": self.user_id,
            "adminId": self.admin_id,
            "startTime": _encode_dt(self.start_time),
            "firstWarningSentAt": _encode_dt(self.first_warning_sent_at),
            "stage": self.stage.value,
            "isPaused": self.is_paused,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> InterviewTimerState:
        return cls(
            channel_id=int(payload["channelId"]),
            user_id=int(payload["userId"]),
            admin_id=int(payload.get("adminId") or 0),
            start_time=_require_dt(payload.get("startTime"), "startTime"),
            first_warning_sent_at=_decode_dt(payload.get("firstWarningSentAt")),
            stage=TimerStage(payload.get("stage") or TimerStage.WAITING_FIRST_WARNING.value),
            is_paused=bool(payload.get("isPaused", False)),
        )


@dataclass(frozen=True, slots=True)
class InterviewDataState:
    user_id: int
    channel_id: int
    submission_id: int
    created_at: datetime

    def to_payload(self) -> dict[str, object]:
        return {
            "userId": self.user_id,
            "channelId": self.channel_id,
            "submissionId": self.submission_id,
            "createdAt": _encode_dt(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> InterviewDataState:
        return cls(
            user_id=int(payload["userId"]),
            channel_id=int(payload["channelId"]),
            submission_id=int(payload["submissionId"]),
            created_at=_require_dt(payload.get("createdAt"), "createdAt"),
        )


@dataclass(frozen=True, slots=True)
class VoiceSessionState:
    start_time: datetime
    last_checkpoint: datetime
    channel_id: int

    def to_payload(self) -> dict[str, object]:
        return {
            "startTime": _encode_dt(self.start_time),
            "lastCheckpoint": _encode_dt(self.last_checkpoint),
            "channelId": self.channel_id,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> VoiceSessionState:
        return cls(
            start_time=_require_dt(payload.get("startTime"), "startTime"),
            last_checkpoint=_require_dt(payload.get("lastCheckpoint"), "lastCheckpoint"),
            channel_id=int(payload["channelId"]),
        )


_DESCRIPTOR_TYPES: dict[StateCategory, type] = {
    StateCategory.TIMERS: InterviewTimerState,
    StateCategory.ACTIVE_SESSIONS_A: InterviewDataState,
    StateCategory.ACTIVE_SESSIONS_B: VoiceSessionState,
}

DOCUMENT_KEYS: dict[StateCategory, str] = {
    StateCategory.CREATED_CHILDREN: "createdChildren",
    StateCategory.TIMERS: "timers",
    StateCategory.ACTIVE_SESSIONS_A: "activeSessionsA",
    StateCategory.ACTIVE_SESSIONS_B: "activeSessionsB",
}


def normalize_value(category: StateCategory, value: object) -> object:
    """Coerce a category value into the immutable form kept in a snapshot."""
    if category is StateCategory.CREATED_CHILDREN:
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            raise TypeError("created-children values must be a collection of channel ids")
        return frozenset(int(child_id) for child_id in value)
    expected = _DESCRIPTOR_TYPES[category]
    if not isinstance(value, expected):
        raise TypeError(f"{category.value} values must be {expected.__name__}, got {type(value).__name__}")
    return value


def encode_value(category: StateCategory, value: object) -> object:
    if category is StateCategory.CREATED_CHILDREN:
        return sorted(int(child_id) for child_id in value)  # type: ignore[union-attr]
    return value.to_payload()  # type: ignore[attr-defined]


def decode_value(category: StateCategory, payload: object) -> object:
    if category is StateCategory.CREATED_CHILDREN:
        if not isinstance(payload, list):
            raise TypeError("created-children payload must be a list")
        return frozenset(int(child_id) for child_id in payload)
    if not isinstance(payload, Mapping):
        raise TypeError(f"{category.value} payload must be an object")
    return _DESCRIPTOR_TYPES[category].from_payload(payload)  # type: ignore[attr-defined]


@dataclass(slots=True)
class RuntimeStateSnapshot:
    created_children: dict[int, frozenset[int]] = field(default_factory=dict)
    timers: dict[int, InterviewTimerState] = field(default_factory=dict)
    active_sessions_a: dict[int, InterviewDataState] = field(default_factory=dict)
    active_sessions_b: dict[int, VoiceSessionState] = field(default_factory=dict)
    last_saved: datetime | None = None

    def category(self, category: StateCategory) -> dict[int, Any]:
        if category is StateCategory.CREATED_CHILDREN:
            return self.created_children
        if category is StateCategory.TIMERS:
            return self.timers
        if category is StateCategory.ACTIVE_SESSIONS_A:
            return self.active_sessions_a
        if category is StateCategory.ACTIVE_SESSIONS_B:
            return self.active_sessions_b
        raise KeyError(f"Unsupported state category: {category}")

    def replace(self, category: StateCategory, entries: dict[int, Any]) -> None:
        if category is StateCategory.CREATED_CHILDREN:
            self.created_children = entries
        elif category is StateCategory.TIMERS:
            self.timers = entries
        elif category is StateCategory.ACTIVE_SESSIONS_A:
            self.active_sessions_a = entries
        elif category is StateCategory.ACTIVE_SESSIONS_B:
            self.active_sessions_b = entries
        else:
            raise KeyError(f"Unsupported state category: {category}")

    def copy(self) -> RuntimeStateSnapshot:
        # Values are frozen, so copying the mappings is enough.
        return RuntimeStateSnapshot(
            created_children=dict(self.created_children),
            timers=dict(self.timers),
            active_sessions_a=dict(self.active_sessions_a),
            active_sessions_b=dict(self.active_sessions_b),
            last_saved=self.last_saved,
        )

    def counts(self) -> dict[str, int]:
        return {category.value: len(self.category(category)) for category in StateCategory}


def snapshot_to_document(snapshot: RuntimeStateSnapshot) -> dict[str, object]:
    document: dict[str, object] = {"lastSaved": _encode_dt(snapshot.last_saved)}
    for category, document_key in DOCUMENT_KEYS.items():
        entries = snapshot.category(category)
        document[document_key] = {
            str(key): encode_value(category, entries[key])
            for key in sorted(entries)
        }
    return document


def snapshot_from_document(document: object) -> RuntimeStateSnapshot:
    if not isinstance(document, Mapping):
        raise ValueError("State document must be a JSON object")
    snapshot = RuntimeStateSnapshot(last_saved=_decode_dt(document.get("lastSaved")))
    for category, document_key in DOCUMENT_KEYS.items():
        raw_entries = document.get(document_key) or {}
        if not isinstance(raw_entries, Mapping):
            raise ValueError(f"{document_key} must be a JSON object")
        entries = snapshot.category(category)
        for raw_key, payload in raw_entries.items():
            entries[int(raw_key)] = decode_value(category, payload)
    return snapshot
