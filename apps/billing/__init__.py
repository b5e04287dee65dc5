"""Billing module: billing events, trigger state machine and notifications."""

from .schema import BillingEvent, BillOutcome, InvoiceNotification
from .state_machine import BillingState, InvalidTransition

__all__ = ["BillingEvent", "BillOutcome", "InvoiceNotification", "BillingState", "InvalidTransition"]
