from __future__ import annotations

from typing import Any


class ControllerError(Exception):
    """Base class for errors raised by the controller."""


class ValidationError(ControllerError):
    """Malformed resource; rejected before it reaches a strategy engine."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    @classmethod
    def from_pydantic(cls, exc: Any, what: str) -> "ValidationError":
        """Flatten a pydantic ValidationError into one readable message."""
        errors = [
            {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", ""), "type": e.get("type", "")}
            for e in exc.errors()
        ]
        details = "; ".join(f"{'.'.join(e['loc']) or '<root>'}: {e['msg']}" for e in errors)
        return cls(f"{what}: {details}", errors=errors)


class TransientInfraError(ControllerError):
    """Recoverable infrastructure failure. Retried with backoff, never surfaced in status."""


class GateFailure(ControllerError):
    """An analysis gate reached Failed or Error."""

    def __init__(self, reason: str, run: str | None = None, phase: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.run = run
        self.phase = phase


class ConflictError(ControllerError):
    """Optimistic-concurrency mismatch on write."""


class NotFoundError(ControllerError):
    pass
