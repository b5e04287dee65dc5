from __future__ import annotations

from typing import Dict


class MeteringError(Exception):
    """Base class for metering/billing errors.

    Every error carries a stable ``kind`` so API layers can return a
    structured ``{kind, message}`` body without inspecting the type.
    """

    kind = "metering_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.kind
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(MeteringError):
    kind = "validation_error"


class NotFoundError(MeteringError):
    kind = "not_found"


class DuplicateActiveMeter(MeteringError):
    kind = "duplicate_active_meter"


class OutOfOrderRead(MeteringError):
    kind = "out_of_order_read"


class NoRatePlanFound(MeteringError):
    kind = "no_rate_plan_found"


class RatePlanInactive(MeteringError):
    kind = "rate_plan_inactive"


class InsufficientReadHistory(MeteringError):
    kind = "insufficient_read_history"


class ConcurrencyConflict(MeteringError):
    kind = "concurrency_conflict"


__all__ = [
    "MeteringError",
    "ValidationError",
    "NotFoundError",
    "DuplicateActiveMeter",
    "OutOfOrderRead",
    "NoRatePlanFound",
    "RatePlanInactive",
    "InsufficientReadHistory",
    "ConcurrencyConflict",
]
