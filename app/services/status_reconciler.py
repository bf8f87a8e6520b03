"""Canonical payment state derived from local and rail-reported signals."""
from __future__ import annotations

from typing import Any

PAID = "paid"
PROCESSING = "processing"
INCOMPLETE = "incomplete"

TRANSFER_SETTLED = "succeeded"
# Tuples rather than sets: membership must not hash arbitrary stored values.
INTENT_MOVING = ("succeeded", "processing")
INTENT_STALLED = (
    "requires_payment_method",
    "requires_action",
    "requires_confirmation",
    "incomplete",
    "canceled",
)
LOCAL_COMPLETED = "completed"


def reconcile(payment: Any) -> str:
    """Return the display-level state for ``payment``.

    ``payment`` only needs ``status``, ``intent_status`` and ``transfer_status``
    attributes; missing attributes count as absent signals. Evaluated top-down,
    first match wins: a settled transfer beats everything, then the intent,
    then the local status.
    """

    transfer_status = getattr(payment, "transfer_status", None)
    intent_status = getattr(payment, "intent_status", None)
    local_status = getattr(payment, "status", None)

    if transfer_status == TRANSFER_SETTLED:
        return PAID
    if intent_status in INTENT_MOVING:
        return PROCESSING
    if intent_status in INTENT_STALLED:
        return INCOMPLETE
    if local_status == LOCAL_COMPLETED:
        return PAID
    return local_status


def reconcile_signals(
    status: Any = None,
    intent_status: Any = None,
    transfer_status: Any = None,
) -> str:
    """Keyword form of :func:`reconcile` for callers holding raw values."""

    return reconcile(_Signals(status, intent_status, transfer_status))


class _Signals:
    __slots__ = ("status", "intent_status", "transfer_status")

    def __init__(self, status: Any, intent_status: Any, transfer_status: Any) -> None:
        self.status = status
        self.intent_status = intent_status
        self.transfer_status = transfer_status


def is_terminal(state: str) -> bool:
    return state == PAID


__all__ = ["PAID", "PROCESSING", "INCOMPLETE", "reconcile", "reconcile_signals", "is_terminal"]
