"""
Common utilities and shared components
"""
from .errors import (
    ConcurrencyConflict,
    DuplicateActiveMeter,
    InsufficientReadHistory,
    MeteringError,
    NoRatePlanFound,
    NotFoundError,
    OutOfOrderRead,
    RatePlanInactive,
    ValidationError,
)

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
