# core/state_machine.py

"""
Single source of truth for status transitions.

Every status write for Booking, Payment, Payout and Dispute goes through
``transition()``, which checks the edge against the tables below and then
performs a conditional update (``UPDATE ... WHERE status = <expected>``).
If another writer moved the row first, zero rows match and StateError is
raised, so stale callers never act twice.
"""

import logging

from django.utils import timezone

from core.exceptions import StateError
from core.models import (
    Booking,
    BookingStatus,
    Dispute,
    DisputeStatus,
    Payment,
    PaymentStatus,
    Payout,
    PayoutStatus,
)

logger = logging.getLogger(__name__)


BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.PENDING_EXECUTION, BookingStatus.CANCELLED},
    BookingStatus.PENDING_EXECUTION: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {BookingStatus.AWAITING_CONFIRMATION},
    BookingStatus.AWAITING_CONFIRMATION: {BookingStatus.COMPLETED, BookingStatus.DISPUTED},
    BookingStatus.DISPUTED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.ESCROW, PaymentStatus.FAILED, PaymentStatus.REFUNDED},
    PaymentStatus.ESCROW: {PaymentStatus.PROCESSING_RELEASE, PaymentStatus.REFUNDED},
    PaymentStatus.PROCESSING_RELEASE: {PaymentStatus.RELEASED, PaymentStatus.REFUNDED},  # refund only while the payout is unsent
    PaymentStatus.RELEASED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.FAILED: {PaymentStatus.PENDING},  # new checkout attempt, fresh reference
}

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.CANCELLED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.FAILED: {PayoutStatus.PENDING, PayoutStatus.CANCELLED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.CANCELLED: set(),
}

DISPUTE_TRANSITIONS = {
    DisputeStatus.PENDING: {DisputeStatus.ESCALATED, DisputeStatus.RESOLVED},
    DisputeStatus.ESCALATED: {DisputeStatus.RESOLVED},
    DisputeStatus.RESOLVED: set(),
}

TABLES = {
    Booking: BOOKING_TRANSITIONS,
    Payment: PAYMENT_TRANSITIONS,
    Payout: PAYOUT_TRANSITIONS,
    Dispute: DISPUTE_TRANSITIONS,
}


def is_allowed(model, current: str, target: str) -> bool:
    return target in TABLES[model].get(current, set())


def assert_transition(model, current: str, target: str) -> None:
    if not is_allowed(model, current, target):
        raise StateError(
            f"{model.__name__} cannot move from {current} to {target}.",
            current=current,
            target=target,
        )


def transition(instance, target: str, *, expected: str | None = None, **fields):
    """
    Move ``instance`` to ``target`` if it is still in ``expected`` (defaults
    to the status currently loaded on the instance).

    Extra ``fields`` are written in the same UPDATE statement. The instance
    is refreshed in place on success.
    """
    model = type(instance)
    current = expected if expected is not None else instance.status
    assert_transition(model, current, target)

    values = dict(fields)
    values["status"] = target
    if hasattr(instance, "updated_at"):
        values["updated_at"] = timezone.now()

    updated = model.objects.filter(pk=instance.pk, status=current).update(**values)
    if updated == 0:
        actual = model.objects.filter(pk=instance.pk).values_list("status", flat=True).first()
        logger.warning(
            f"Stale transition rejected: {model.__name__} #{instance.pk} "
            f"expected {current} -> {target}, found {actual}"
        )
        raise StateError(
            f"{model.__name__} #{instance.pk} is no longer {current} (now {actual}).",
            current=actual,
            target=target,
        )

    for name, value in values.items():
        setattr(instance, name, value)
    logger.info(f"{model.__name__} #{instance.pk}: {current} -> {target}")
    return instance
