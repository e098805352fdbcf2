"""Domain exceptions for the progression and rewards engine.

Services raise these for rule violations; the HTTP error handler maps each
``error_code`` to a status code. Re-submitting an already processed award is
not an error and never raises.
"""

from __future__ import annotations

from typing import Any


class GamificationError(Exception):
    """Base class for all engine errors."""

    error_code = "gamification_error"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "error": self.error_code, **({"details": self.details} if self.details else {})}


class NotFoundError(GamificationError):
    """Unknown user, badge, quest, chest or story arc id."""

    error_code = "not_found"
    status_code = 404


class InvalidStateError(GamificationError):
    """Operation not allowed in the entity's current state."""

    error_code = "invalid_state"
    status_code = 409


class InsufficientFundsError(GamificationError):
    """Coin balance below the required spend."""

    error_code = "insufficient_funds"
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient coins: {required} required, {available} available",
            {"required": required, "available": available},
        )
        self.required = required
        self.available = available


class ConfigurationError(GamificationError):
    """Invalid admin configuration (empty loot table, cyclic arcs, unknown rule kind)."""

    error_code = "configuration_error"
    status_code = 422
