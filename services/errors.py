from __future__ import annotations


class QutieError(Exception):
    pass


class ValidationError(QutieError):
    """Malformed or missing inbound request data. Surfaced to callers as 4xx."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class WorkflowError(QutieError):
    pass


class PersistenceError(QutieError):
    pass


class TaskError(QutieError):
    pass
