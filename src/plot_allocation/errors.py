from __future__ import annotations

from typing import Any, Dict, Optional


class PlotEngineError(Exception):
    """
    Base class for every error the allocation engine surfaces to callers.

    `http_status` is the status the API layer answers with; `details` is
    extra structured context that is safe to return to the client.
    """

    http_status: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}


class ValidationError(PlotEngineError, ValueError):
    """Bad dimensions, malformed coordinates or missing required fields."""

    http_status = 400


class InvalidDimension(ValidationError):
    pass


class NotFound(PlotEngineError):
    http_status = 404


class PositionOccupied(PlotEngineError):
    http_status = 409

    def __init__(self, x: float, z: float) -> None:
        super().__init__("position already occupied", details={"x": x, "z": z})


class QuotaExceeded(PlotEngineError):
    """
    Free-square accounting would break its invariant.

    Given correct quoting this never happens; seeing it means a bug.
    """

    http_status = 500


class PaymentRequired(PlotEngineError):
    http_status = 402

    def __init__(self, total_cost: int) -> None:
        super().__init__(
            "payment required and credits are insufficient",
            details={"total_cost": total_cost},
        )
        self.total_cost = total_cost


class PaymentNotCompleted(PlotEngineError):
    http_status = 402


class PaymentAmountMismatch(PlotEngineError):
    http_status = 409


class InvalidTransactionState(PlotEngineError):
    http_status = 409


class ConcurrencyConflict(PlotEngineError):
    """A compare-and-swap on a versioned record lost the race."""

    http_status = 409
