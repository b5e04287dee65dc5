from __future__ import annotations

from enum import Enum


class BillingState(str, Enum):
    IDLE = "idle"
    PENDING_BILL = "pending_bill"
    BILLED = "billed"


class InvalidTransition(Exception):
    """Raised when a billing state transition is invalid."""


_ALLOWED = {
    BillingState.IDLE: {BillingState.PENDING_BILL},
    BillingState.PENDING_BILL: {BillingState.BILLED},
    BillingState.BILLED: set(),
}


def transition_billing(current: BillingState, target: BillingState) -> BillingState:
    if target not in _ALLOWED[current]:
        raise InvalidTransition(f"{current.value} -> {target.value}")
    return target


def derive_state(has_predecessor: bool, billed: bool) -> BillingState:
    """State of one (meter, read) pair from what the store holds.

    Replays the transitions, so a billed read without a predecessor raises.
    """
    state = BillingState.IDLE
    if has_predecessor:
        state = transition_billing(state, BillingState.PENDING_BILL)
    if billed:
        state = transition_billing(state, BillingState.BILLED)
    return state


__all__ = ["BillingState", "InvalidTransition", "transition_billing", "derive_state"]
