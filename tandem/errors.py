"""
Typed error values for the Tandem core.

Most of these are returned on the result of the operation they affect
(``EventResult.error``, ``ApplyResult.warning``, ``SubmitResult.error``)
instead of being raised. ``InvariantViolation`` is the exception: it means
the core itself is wrong and the current session must stop.
"""
from typing import Any, Dict, Optional


class CoreError(Exception):
    """Base class for every error the core reports."""

    kind = "core_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.details}


class UserInputRejected(CoreError):
    """Input that cannot apply (locked cell, empty answer, solved slot)."""

    kind = "user_input_rejected"


class DuplicateGuess(CoreError):
    """Grouping guess already tried; shown to the player, never charged."""

    kind = "duplicate_guess"


class StorageUnavailable(CoreError):
    kind = "storage_unavailable"


class NetworkTransient(CoreError):
    """Timeouts, connection failures, 5xx and 429. Retried."""

    kind = "network_transient"

    def __init__(self, message: str = "", status: Optional[int] = None, **details: Any):
        super().__init__(message, status=status, **details)
        self.status = status


class NetworkFatal(CoreError):
    """4xx responses other than 429. Reported once, never retried."""

    kind = "network_fatal"

    def __init__(self, message: str = "", status: Optional[int] = None, **details: Any):
        super().__init__(message, status=status, **details)
        self.status = status


class ClockSkew(CoreError):
    """Device time moved backwards; the timer sample was clamped."""

    kind = "clock_skew"


class SchemaMismatch(CoreError):
    """Stored stats had no or an unknown version tag and were migrated."""

    kind = "schema_mismatch"


class InvariantViolation(CoreError):
    """A programming error. Halts the core for the current session."""

    kind = "invariant_violation"

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message, payload=payload or {})
        self.payload = payload or {}
