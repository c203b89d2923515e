# core/services/escrow.py

"""
Payment escrow manager.

Owns the Payment record: captures client funds into escrow, releases them
towards the provider (by creating the Payout) and refunds them. Duplicate
gateway callbacks are absorbed by keying everything on ``paystack_ref``.
"""

import logging
from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core.exceptions import (
    ConsistencyError,
    ExternalServiceError,
    NotFound,
    PermissionDenied,
    PreconditionError,
    StateError,
)
from core.models import (
    Booking,
    BookingStatus,
    Payment,
    PaymentStatus,
    Payout,
    PayoutStatus,
)
from core.services import paystack
from core.services.bookings import lock_booking, mark_paid
from core.state_machine import transition
from core.utils.money import fee_breakdown, quantize_money
from core.utils.notifications import notify_admins, notify_booking_parties

logger = logging.getLogger(__name__)

# Payment states in which the client's money has been captured
CAPTURED_STATUSES = (
    PaymentStatus.ESCROW,
    PaymentStatus.PROCESSING_RELEASE,
    PaymentStatus.RELEASED,
)

RELEASABLE_BOOKING_STATUSES = (
    BookingStatus.AWAITING_CONFIRMATION,
    BookingStatus.COMPLETED,
)


def payout_reference(payment: Payment) -> str:
    """Transfer idempotency key; the same value is sent on every retry."""
    return f"servicehub_payout_{payment.id}"


def _currency() -> str:
    return getattr(settings, "DEFAULT_CURRENCY", "ZAR")


def _lock_payment(payment_id) -> tuple[Booking, Payment]:
    """Lock the booking row, then the payment. Callers must be inside atomic()."""
    booking_id = Payment.objects.filter(pk=payment_id).values_list("booking_id", flat=True).first()
    if booking_id is None:
        raise NotFound(f"Payment {payment_id} not found.", payment_id=payment_id)
    booking = lock_booking(booking_id)
    payment = Payment.objects.select_for_update().get(pk=payment_id)
    return booking, payment


def _check_breakdown(payment: Payment) -> None:
    if not payment.breakdown_is_consistent():
        raise ConsistencyError(
            f"Payment {payment.paystack_ref}: escrow {payment.escrow_amount} + fee "
            f"{payment.platform_fee} != amount {payment.amount}",
            payment_id=payment.id,
        )


def _open_payment(booking: Booking, rotate_reference: bool = True) -> Payment:
    """
    Get or create the booking's PENDING payment with a fresh fee breakdown.

    A FAILED payment is reopened so the client can try again. A PENDING one
    gets a new reference for a new hosted checkout, since Paystack rejects a
    reused one; direct charges keep it so Paystack dedupes overlapping
    requests. Payments in any other state are returned untouched.
    """
    amount, platform_fee, escrow_amount = fee_breakdown(booking.total_amount)
    payment = Payment.objects.select_for_update().filter(booking=booking).first()

    if payment is None:
        payment = Payment.objects.create(
            booking=booking,
            amount=amount,
            platform_fee=platform_fee,
            escrow_amount=escrow_amount,
            currency=_currency(),
            paystack_ref=paystack.generate_reference(),
            status=PaymentStatus.PENDING,
        )
        logger.info(f"Payment {payment.paystack_ref} opened for booking #{booking.id}: {amount} {payment.currency}")
        return payment

    if payment.status == PaymentStatus.FAILED:
        old_ref = payment.paystack_ref
        transition(
            payment,
            PaymentStatus.PENDING,
            paystack_ref=paystack.generate_reference(),
            amount=amount,
            platform_fee=platform_fee,
            escrow_amount=escrow_amount,
            failure_reason="",
        )
        logger.info(f"Payment for booking #{booking.id} reopened: {old_ref} -> {payment.paystack_ref}")
    elif payment.status == PaymentStatus.PENDING and rotate_reference:
        payment.paystack_ref = paystack.generate_reference()
        payment.save(update_fields=["paystack_ref", "updated_at"])

    return payment


# =============================================================================
# CHECKOUT (hosted payment page)
# =============================================================================

def initialize_checkout(booking_id, user, callback_url=None, gateway=None) -> dict:
    """
    Start a hosted Paystack checkout for a CONFIRMED booking.

    Returns the authorization URL the client is redirected to; the charge is
    recorded later by the webhook or by ``verify_checkout``.
    """
    gateway = gateway or paystack.get_gateway()

    with transaction.atomic():
        booking = lock_booking(booking_id)
        if booking.client_id != user.id:
            raise PermissionDenied("Only the booking's client can pay for it.", booking_id=booking.id)
        if booking.status != BookingStatus.CONFIRMED:
            raise StateError(
                f"Booking #{booking.id} is {booking.status}; only confirmed bookings can be paid.",
                current=booking.status,
            )

        payment = _open_payment(booking)
        if payment.status != PaymentStatus.PENDING:
            raise StateError(f"Booking #{booking.id} is already paid.", current=payment.status)

    result = gateway.initialize(
        email=user.email,
        amount=payment.amount,
        currency=payment.currency,
        reference=payment.paystack_ref,
        callback_url=callback_url or getattr(settings, "PAYSTACK_CALLBACK_URL", None),
        metadata={"booking_id": booking.id, "payment_id": payment.id},
    )
    if not result.get("success"):
        logger.error(f"Checkout init failed for booking #{booking.id}: {result.get('message')}")
        raise ExternalServiceError(
            "Payment gateway unavailable. Please try again.",
            reference=payment.paystack_ref,
            gateway_message=result.get("message", ""),
        )

    return {
        "authorization_url": result.get("authorization_url"),
        "access_code": result.get("access_code"),
        "reference": payment.paystack_ref,
        "amount": payment.amount,
        "currency": payment.currency,
    }


def _metadata(result: dict) -> dict:
    metadata = ((result.get("raw") or {}).get("data") or {}).get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def verify_checkout(reference: str, gateway=None):
    """Ask Paystack for the outcome of a checkout and record it."""
    gateway = gateway or paystack.get_gateway()
    result = gateway.verify(reference)

    if result.get("success"):
        return record_charge_success(
            reference,
            amount=result.get("amount"),
            paid_at=result.get("paid_at"),
            metadata=_metadata(result),
        )

    status = result.get("status")
    if status == "failed":
        return record_charge_failure(reference, result.get("message") or "Payment failed")
    if status == "error":
        raise ExternalServiceError("Could not verify payment.", reference=reference)

    # abandoned / ongoing: nothing to record yet
    return Payment.objects.filter(paystack_ref=reference).first()


# =============================================================================
# CHARGE
# =============================================================================

def charge(booking, method: dict, gateway=None) -> Payment:
    """
    Capture the booking amount into escrow with a saved card authorization.

    ``method`` holds ``authorization_code`` and optionally ``email``. The
    PENDING payment (and its reference) is committed before the gateway is
    called, so a callback racing this request finds the row and is absorbed.
    Overlapping calls for one booking send the same reference. Always returns
    the booking's payment.
    """
    gateway = gateway or paystack.get_gateway()
    booking_id = booking.id if isinstance(booking, Booking) else booking

    with transaction.atomic():
        booking = lock_booking(booking_id)
        existing = Payment.objects.filter(booking=booking).first()
        if existing is not None and existing.status in CAPTURED_STATUSES:
            logger.info(f"Booking #{booking.id} already charged ({existing.paystack_ref}), skipping")
            return existing
        if booking.status != BookingStatus.CONFIRMED:
            raise StateError(
                f"Booking #{booking.id} is {booking.status}; only confirmed bookings can be charged.",
                current=booking.status,
            )
        payment = _open_payment(booking, rotate_reference=False)

    result = gateway.charge(
        email=method.get("email") or booking.client.email,
        amount=payment.amount,
        currency=payment.currency,
        authorization_code=method.get("authorization_code", ""),
        reference=payment.paystack_ref,
        metadata={"booking_id": booking.id, "payment_id": payment.id},
    )

    if result.get("success"):
        recorded = record_charge_success(
            payment.paystack_ref,
            amount=result.get("amount"),
            paid_at=result.get("paid_at"),
            metadata={"booking_id": booking.id},
        )
        return recorded if recorded is not None else Payment.objects.get(booking_id=booking.id)

    reason = result.get("message") or "Charge declined"
    record_charge_failure(payment.paystack_ref, reason)
    raise ExternalServiceError(f"Payment failed: {reason}", reference=payment.paystack_ref)


def _find_payment_for_reference(reference, metadata=None):
    payment = Payment.objects.filter(paystack_ref=reference).first()
    if payment is not None or not metadata:
        return payment

    # The client may complete a checkout opened under an earlier reference
    booking_id = metadata.get("booking_id")
    if not booking_id:
        return None
    uncaptured = (PaymentStatus.PENDING, PaymentStatus.FAILED)
    payment = Payment.objects.filter(booking_id=booking_id, status__in=uncaptured).first()
    if payment is not None:
        logger.warning(f"Adopting reference {reference} for payment {payment.paystack_ref} (booking #{booking_id})")
        Payment.objects.filter(pk=payment.pk, status__in=uncaptured).update(paystack_ref=reference)
    return Payment.objects.filter(paystack_ref=reference).first()


def record_charge_success(reference: str, amount=None, paid_at=None, metadata=None):
    """
    Record a successful capture. Safe to call repeatedly for one reference:
    only the first call moves the payment into escrow.

    A capture under a superseded reference of a booking that is already paid
    (a second checkout tab, an overlapping charge) is refunded, and the
    booking's payment is returned.
    """
    payment = _find_payment_for_reference(reference, metadata)
    if payment is None:
        booking_id = (metadata or {}).get("booking_id")
        current = Payment.objects.filter(booking_id=booking_id).first() if booking_id else None
        if current is None:
            logger.warning(f"Charge success for unknown reference {reference}")
            return None

        logger.warning(
            f"Capture {reference} superseded by {current.paystack_ref} ({current.status}) "
            f"on booking #{booking_id}; refunding"
        )
        captured = quantize_money(amount, current.currency) if amount is not None else current.amount
        _queue_orphan_refund(reference, captured, current.currency)
        return current

    refund_needed = False
    with transaction.atomic():
        booking, payment = _lock_payment(payment.id)

        if payment.status in CAPTURED_STATUSES or (payment.status == PaymentStatus.REFUNDED and payment.refund_ref):
            logger.info(f"Duplicate charge success for {reference} ignored ({payment.status})")
            return payment

        if amount is not None and quantize_money(amount, payment.currency) != payment.amount:
            reason = f"Amount mismatch: captured {amount}, expected {payment.amount}"
            logger.error(f"Payment {reference}: {reason}")
            if payment.status == PaymentStatus.PENDING:
                transition(payment, PaymentStatus.FAILED, failure_reason=reason)
            notify_admins(f"Payment {reference} for booking #{booking.id}: {reason}. Manual review needed.")
            return payment

        if payment.status == PaymentStatus.FAILED:
            # Late success after a recorded failure (e.g. a timed-out charge call)
            transition(payment, PaymentStatus.PENDING, failure_reason="")

        if payment.status == PaymentStatus.REFUNDED or booking.status != BookingStatus.CONFIRMED:
            refund_needed = True
        else:
            _check_breakdown(payment)

            if isinstance(paid_at, str):
                paid_at = parse_datetime(paid_at)
            transition(payment, PaymentStatus.ESCROW, paid_at=paid_at or timezone.now())
            # The charge-time breakdown is authoritative
            Booking.objects.filter(pk=booking.pk).update(platform_fee=payment.platform_fee)
            mark_paid(booking.id)

            logger.info(f"Payment {reference} held in escrow: {payment.escrow_amount} + fee {payment.platform_fee}")
            notify_booking_parties(
                booking,
                f"Payment of {payment.amount} {payment.currency} for booking #{booking.id} is held in escrow.",
                'payment_received',
            )

    if refund_needed:
        logger.warning(f"Capture {reference} arrived for booking #{booking.id} in {booking.status}; refunding")
        _queue_orphan_refund(payment.paystack_ref, payment.amount, payment.currency)
    return payment


# =============================================================================
# ORPHAN CAPTURES
# =============================================================================

def _queue_orphan_refund(reference: str, amount, currency: str) -> None:
    from core.tasks import refund_orphan_capture

    transaction.on_commit(lambda: refund_orphan_capture.delay(reference, str(amount), currency))


def refund_orphan_capture(reference: str, amount, currency: str, gateway=None) -> bool:
    """
    Send back money captured under ``reference`` that no booking can use.
    Returns True once the capture is refunded (now or earlier).
    """
    gateway = gateway or paystack.get_gateway()

    payment = Payment.objects.filter(paystack_ref=reference).first()
    if payment is not None and payment.refund_ref:
        logger.info(f"Capture {reference} already refunded ({payment.refund_ref})")
        return True

    # Paystack reports a refunded transaction as reversed
    if (gateway.verify(reference).get("status") or "") == "reversed":
        _record_orphan_refund(reference, reference)
        return True

    result = gateway.refund(
        reference=reference,
        amount=amount,
        currency=currency,
        reason="Booking no longer payable",
    )
    if not result.get("success"):
        logger.error(f"Orphan capture refund failed for {reference}: {result.get('message')}")
        return False

    _record_orphan_refund(reference, str(result.get("refund_id") or reference))
    logger.info(f"Orphan capture {reference} refunded: {amount} {currency}")
    return True


def _record_orphan_refund(reference: str, refund_ref: str) -> None:
    payment = Payment.objects.filter(paystack_ref=reference).first()
    if payment is None:
        # Superseded reference: the booking's payment lives under another one
        return

    with transaction.atomic():
        booking, payment = _lock_payment(payment.id)
        values = {"refund_ref": refund_ref, "refunded_at": timezone.now()}
        if payment.status == PaymentStatus.PENDING:
            transition(payment, PaymentStatus.REFUNDED, **values)
        elif payment.status == PaymentStatus.REFUNDED:
            Payment.objects.filter(pk=payment.pk).update(**values)
        else:
            logger.error(f"Orphan refund {refund_ref} recorded against {payment.status} payment {reference}")


def record_charge_failure(reference: str, reason: str = ""):
    """PENDING -> FAILED. The booking stays CONFIRMED so the client can retry."""
    payment = Payment.objects.filter(paystack_ref=reference).first()
    if payment is None:
        logger.warning(f"Charge failure for unknown reference {reference}")
        return None

    with transaction.atomic():
        booking, payment = _lock_payment(payment.id)
        if payment.status != PaymentStatus.PENDING:
            logger.info(f"Charge failure for {reference} ignored ({payment.status})")
            return payment

        transition(payment, PaymentStatus.FAILED, failure_reason=reason[:500])
        logger.warning(f"Payment {reference} failed for booking #{booking.id}: {reason}")
        notify_booking_parties(
            booking,
            f"Payment for booking #{booking.id} failed. Please try again.",
            'payment_failed',
            provider=False,
        )
    return payment


# =============================================================================
# RELEASE & REFUND
# =============================================================================

def initiate_release(payment_id) -> Payout:
    """
    ESCROW -> PROCESSING_RELEASE and create the Payout, all in one transaction.

    The transfer itself runs in a worker once the transaction commits.
    """
    from core.tasks import dispatch_payout

    with transaction.atomic():
        booking, payment = _lock_payment(payment_id)

        if booking.status not in RELEASABLE_BOOKING_STATUSES:
            raise PreconditionError(
                f"Booking #{booking.id} is {booking.status}; funds cannot be released.",
                booking_status=booking.status,
            )
        if booking.has_open_dispute():
            raise PreconditionError(
                f"Booking #{booking.id} has an open dispute; release is blocked.",
                booking_id=booking.id,
            )
        _check_breakdown(payment)

        transition(payment, PaymentStatus.PROCESSING_RELEASE, expected=PaymentStatus.ESCROW)
        payout = Payout.objects.create(
            payment=payment,
            provider_id=booking.provider_id,
            amount=payment.escrow_amount,
            currency=payment.currency,
            reference=payout_reference(payment),
            status=PayoutStatus.PENDING,
        )
        logger.info(f"Release started for booking #{booking.id}: payout {payout.reference} of {payout.amount}")

        transaction.on_commit(lambda: dispatch_payout.delay(payment.id))
    return payout


def _ensure_payout_unsent(payout: Payout, gateway) -> None:
    """Raise unless ``payout`` provably never moved money to the provider."""
    if payout.status not in (PayoutStatus.PENDING, PayoutStatus.FAILED):
        raise PreconditionError(
            f"Payout {payout.reference} is {payout.status}; the transfer may already be on its way.",
            payout_status=payout.status,
        )
    if payout.attempts == 0:
        return

    # An earlier attempt may have reached Paystack after all
    result = gateway.verify_transfer(payout.reference)
    status = (result.get("status") or "").lower()
    if result.get("success"):
        if status in ("failed", "reversed"):
            return
        raise PreconditionError(
            f"Payout {payout.reference} reached Paystack ({status}); it cannot be cancelled.",
            payout_status=payout.status,
        )
    if status == "error":
        raise ExternalServiceError(
            "Could not confirm the payout was never sent. Please try again later.",
            reference=payout.reference,
        )


def refund(payment_id, gateway=None, reason: str = "", cancel_unsent_payout: bool = False) -> Payment:
    """
    Refund a payment that has not been released.

    PENDING payments have captured nothing and are closed without a gateway
    call; ESCROW payments are reversed through the gateway first. With
    ``cancel_unsent_payout`` a payment whose release started but whose payout
    never left is refunded too, and its payout is cancelled.
    """
    with transaction.atomic():
        booking, payment = _lock_payment(payment_id)

        if payment.status == PaymentStatus.PENDING:
            transition(payment, PaymentStatus.REFUNDED, refunded_at=timezone.now())
            logger.info(f"Payment {payment.paystack_ref} closed before capture (booking #{booking.id})")
            return payment

        gateway = gateway or paystack.get_gateway()
        payout = None
        if payment.status == PaymentStatus.PROCESSING_RELEASE and cancel_unsent_payout:
            payout = Payout.objects.select_for_update().filter(payment=payment).first()
            if payout is not None:
                _ensure_payout_unsent(payout, gateway)
        elif payment.status != PaymentStatus.ESCROW:
            raise StateError(
                f"Payment {payment.paystack_ref} is {payment.status}; only pending or escrowed payments can be refunded.",
                current=payment.status,
            )

        result = gateway.refund(
            reference=payment.paystack_ref,
            amount=payment.amount,
            currency=payment.currency,
            reason=reason or "Booking refund",
        )
        if not result.get("success"):
            logger.error(f"Refund failed for {payment.paystack_ref}: {result.get('message')}")
            raise ExternalServiceError(
                "Refund could not be processed. Please try again later.",
                reference=payment.paystack_ref,
                gateway_message=result.get("message", ""),
            )

        if payout is not None:
            transition(payout, PayoutStatus.CANCELLED, failure_reason=(reason or "Refunded to client")[:500])
            logger.info(f"Payout {payout.reference} cancelled before sending")
        transition(
            payment,
            PaymentStatus.REFUNDED,
            refund_ref=str(result.get("refund_id") or payment.paystack_ref),
            refunded_at=timezone.now(),
        )
        logger.info(f"Payment {payment.paystack_ref} refunded: {payment.amount} {payment.currency}")
        notify_booking_parties(
            booking,
            f"{payment.amount} {payment.currency} for booking #{booking.id} has been refunded.",
            'payment_refunded',
        )
    return payment
