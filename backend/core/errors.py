"""Error hierarchy shared by the analytics and compliance components."""

from __future__ import annotations

import uuid
from datetime import date


class AnalyticsError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(AnalyticsError, ValueError):
    """Raised when an input is outside its allowed range. Never clamped."""


class UnknownValueError(ValidationError):
    """Raised when a string cannot be parsed into a closed enumeration."""

    def __init__(self, enum_name: str, value: object, allowed: list[str]):
        self.enum_name = enum_name
        self.value = value
        self.allowed = allowed
        super().__init__(f"Unknown {enum_name} {value!r}. Allowed: {allowed}")


class DuplicateExecutionError(AnalyticsError):
    """A retention policy already has an execution log for that day."""

    def __init__(self, policy_id: uuid.UUID, execution_date: date):
        self.policy_id = policy_id
        self.execution_date = execution_date
        super().__init__(f"Policy {policy_id} already executed on {execution_date.isoformat()}")


class InvariantViolationError(AnalyticsError):
    """An archival log transition would break one of the log invariants."""

    def __init__(self, invariant: str, detail: str):
        self.invariant = invariant
        self.detail = detail
        super().__init__(f"{invariant}: {detail}")


class TerminalStateError(InvariantViolationError):
    """The archival log already reached COMPLETED or FAILED."""

    def __init__(self, log_id: uuid.UUID, status: str):
        self.log_id = log_id
        self.status = status
        super().__init__("terminal_state", f"log {log_id} is already {status}")


class StaleLogError(InvariantViolationError):
    """The archival log changed after the transition was built from it."""

    def __init__(self, log_id: uuid.UUID):
        self.log_id = log_id
        super().__init__("stale_snapshot", f"log {log_id} was updated concurrently")


class LogNotFoundError(AnalyticsError, KeyError):
    """No archival execution log exists with the given id."""

    def __init__(self, log_id: uuid.UUID):
        self.log_id = log_id
        super().__init__(f"Archival log not found: {log_id}")

    def __str__(self) -> str:
        return self.args[0]
