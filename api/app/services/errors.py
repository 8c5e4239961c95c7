"""Error taxonomy for the rounds engine.

Every error carries a stable ``code`` so the HTTP layer and job trigger can
tell the kinds apart without string matching on messages.
"""

from __future__ import annotations


class RouletteError(Exception):
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code, "message": self.message, "field": None}


class ValidationError(RouletteError):
    """Bad input. ``field`` names the offending input (e.g. ``date`` or ``time``)."""

    code = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code, "message": self.message, "field": self.field}


class InvalidStateError(RouletteError):
    code = "invalid_state"


class StateConflictError(RouletteError):
    code = "state_conflict"


class NotFoundError(RouletteError):
    code = "not_found"


class ExternalDependencyError(RouletteError):
    code = "external_dependency"
