# core/services/payouts.py

from __future__ import annotations

import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.exceptions import NotFound, PreconditionError, StateError
from core.models import (
    BookingStatus,
    Payment,
    PaymentStatus,
    Payout,
    PayoutStatus,
    ServiceProvider,
)
from core.services import paystack
from core.services.bookings import lock_booking
from core.state_machine import transition
from core.utils.notifications import notify_admins, notify_on_commit

logger = logging.getLogger(__name__)

# Paystack transfer statuses that mean "accepted, final result comes by webhook"
IN_FLIGHT_TRANSFER_STATUSES = ("pending", "otp", "received", "queued")


def max_attempts() -> int:
    return int(getattr(settings, "PAYOUT_MAX_ATTEMPTS", 3))


def retry_delay(attempt: int) -> int:
    """Seconds to wait before retry number ``attempt`` (1-based), doubling each time."""
    base = int(getattr(settings, "PAYOUT_RETRY_BASE_SECONDS", 60))
    cap = int(getattr(settings, "PAYOUT_RETRY_MAX_SECONDS", 1800))
    return min(base * (2 ** max(attempt - 1, 0)), cap)


def _lock_payout(payout_id):
    payout = Payout.objects.filter(pk=payout_id).select_related("payment").first()
    if payout is None:
        raise NotFound(f"Payout {payout_id} not found.", payout_id=payout_id)
    booking = lock_booking(payout.payment.booking_id)
    payout = Payout.objects.select_for_update().get(pk=payout_id)
    return booking, payout


# =============================================================================
# RECIPIENT
# =============================================================================

def _resolve_recipient(provider: ServiceProvider, currency: str, gateway) -> str:
    """
    Return the provider's Paystack recipient code, creating it on first use.
    Raises ValueError when the provider has no usable payout account.
    """
    recipient_code = (provider.recipient_code or "").strip()
    if recipient_code:
        return recipient_code

    bank_code = (provider.bank_code or "").strip()
    account_number = (provider.account_number or "").strip()
    if not bank_code or not account_number:
        raise ValueError("Provider has no payout account configured")

    account_name = (provider.account_name or "").strip()
    if not account_name:
        user = provider.user
        account_name = f"{user.first_name} {user.last_name}".strip() or user.username

    result = gateway.create_transfer_recipient(
        name=account_name,
        account_number=account_number,
        bank_code=bank_code,
        currency=(provider.payout_currency or currency).upper(),
        metadata={"provider_id": str(provider.id)},
    )
    if not result.get("success") or not result.get("recipient_code"):
        raise ValueError(f"Failed to create recipient: {result.get('message')}")

    recipient_code = result["recipient_code"]
    ServiceProvider.objects.filter(pk=provider.pk).update(recipient_code=recipient_code)
    provider.recipient_code = recipient_code
    return recipient_code


# =============================================================================
# DISPATCH
# =============================================================================

def dispatch(payment_id, gateway=None) -> Payout:
    """
    Send the escrowed amount of a PROCESSING_RELEASE payment to the provider.

    The payout is claimed with PENDING -> PROCESSING before the transfer API is
    called, so two workers can never transfer the same payout. Every attempt
    uses the payout's fixed reference.
    """
    gateway = gateway or paystack.get_gateway()

    # 1) Claim the payout
    with transaction.atomic():
        payment = Payment.objects.filter(pk=payment_id).first()
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found.", payment_id=payment_id)
        booking = lock_booking(payment.booking_id)
        payment = Payment.objects.select_for_update().get(pk=payment_id)

        payout = Payout.objects.select_for_update().filter(payment=payment).first()

        if payment.status == PaymentStatus.RELEASED and payout is not None:
            logger.info(f"Payout {payout.reference} already completed, nothing to dispatch")
            return payout
        if payment.status != PaymentStatus.PROCESSING_RELEASE:
            raise StateError(
                f"Payment {payment.paystack_ref} is {payment.status}; nothing to pay out.",
                current=payment.status,
            )
        if booking.has_open_dispute():
            raise PreconditionError(
                f"Booking #{booking.id} has an open dispute; payout is on hold.",
                booking_id=booking.id,
            )

        if payout is None:
            from core.services.escrow import payout_reference

            payout = Payout.objects.create(
                payment=payment,
                provider_id=booking.provider_id,
                amount=payment.escrow_amount,
                currency=payment.currency,
                reference=payout_reference(payment),
                status=PayoutStatus.PENDING,
            )

        if payout.status != PayoutStatus.PENDING:
            logger.info(f"Payout {payout.reference} is {payout.status}, skipping dispatch")
            return payout

        transition(payout, PayoutStatus.PROCESSING, attempts=payout.attempts + 1, failure_reason="")

    provider = ServiceProvider.objects.select_related("user").get(pk=payout.provider_id)
    logger.info(f"Dispatching payout {payout.reference}: {payout.amount} {payout.currency} (attempt {payout.attempts})")

    # 2) Talk to Paystack outside the lock
    try:
        if payout.attempts > 1:
            # A previous attempt may have gone through even though we recorded a failure
            previous = gateway.verify_transfer(payout.reference)
            if previous.get("success") and previous.get("status") == "success":
                return _complete_payout(payout.id, previous.get("transfer_code") or "")
            if previous.get("success") and previous.get("status") in IN_FLIGHT_TRANSFER_STATUSES:
                return _mark_in_flight(payout.id, previous.get("transfer_code") or "")

        recipient_code = _resolve_recipient(provider, payout.currency, gateway)
        result = gateway.create_transfer(
            amount=payout.amount,
            recipient_code=recipient_code,
            reference=payout.reference,
            currency=payout.currency,
            reason=f"ServiceHub payout for booking #{booking.id}",
        )
    except Exception as e:
        logger.exception(f"Payout {payout.reference} raised during transfer")
        return _fail_payout(payout.id, str(e))

    # 3) Record the outcome
    if not result.get("success"):
        return _fail_payout(payout.id, result.get("message") or "Transfer failed")

    transfer_status = (result.get("status") or "").lower()
    if transfer_status == "success":
        return _complete_payout(payout.id, result.get("transfer_code") or "")
    if transfer_status in ("failed", "reversed"):
        return _fail_payout(payout.id, f"paystack_{transfer_status}")
    return _mark_in_flight(payout.id, result.get("transfer_code") or "")


def _mark_in_flight(payout_id, transfer_code: str) -> Payout:
    Payout.objects.filter(pk=payout_id, status=PayoutStatus.PROCESSING).update(
        transfer_code=transfer_code,
        updated_at=timezone.now(),
    )
    payout = Payout.objects.get(pk=payout_id)
    logger.info(f"Payout {payout.reference} accepted by Paystack, awaiting final status")
    return payout


def _complete_payout(payout_id, transfer_code: str = "") -> Payout:
    """PROCESSING -> COMPLETED, Payment -> RELEASED and the booking -> COMPLETED."""
    with transaction.atomic():
        booking, payout = _lock_payout(payout_id)
        if payout.status == PayoutStatus.COMPLETED:
            return payout

        transition(
            payout,
            PayoutStatus.COMPLETED,
            expected=PayoutStatus.PROCESSING,
            transfer_code=transfer_code or payout.transfer_code,
            processed_at=timezone.now(),
            failure_reason="",
        )
        payment = Payment.objects.select_for_update().get(pk=payout.payment_id)
        transition(payment, PaymentStatus.RELEASED, expected=PaymentStatus.PROCESSING_RELEASE)

        if booking.status == BookingStatus.AWAITING_CONFIRMATION:
            transition(booking, BookingStatus.COMPLETED, completed_at=timezone.now())

        logger.info(f"Payout {payout.reference} completed: {payout.amount} {payout.currency}")
        notify_on_commit(
            booking.provider.user,
            f"Payout of {payout.amount} {payout.currency} for booking #{booking.id} has been sent.",
            'payout_paid',
        )
        notify_on_commit(booking.client, f"Booking #{booking.id} is complete. Thank you!", 'booking_completed')
    return payout


def _fail_payout(payout_id, reason: str) -> Payout:
    """PROCESSING -> FAILED. The payment stays PROCESSING_RELEASE for the retry."""
    with transaction.atomic():
        booking, payout = _lock_payout(payout_id)
        if payout.status != PayoutStatus.PROCESSING:
            return payout
        transition(payout, PayoutStatus.FAILED, failure_reason=reason[:500], processed_at=timezone.now())

    logger.warning(f"Payout {payout.reference} failed (attempt {payout.attempts}/{max_attempts()}): {reason}")
    return payout


# =============================================================================
# RETRIES
# =============================================================================

def retry_failed(payout_id, gateway=None) -> Payout:
    """FAILED -> PENDING, then dispatch again with the same reference."""
    with transaction.atomic():
        booking, payout = _lock_payout(payout_id)
        transition(payout, PayoutStatus.PENDING, expected=PayoutStatus.FAILED)
        payment_id = payout.payment_id
    logger.info(f"Retrying payout {payout.reference} (attempts so far: {payout.attempts})")
    return dispatch(payment_id, gateway=gateway)


def schedule_retry(payout: Payout) -> bool:
    """
    Queue the next automatic retry for a failed payout with exponential
    backoff. Once the attempt budget is spent the payout stays FAILED and the
    admins are told. Returns True if a retry was queued.
    """
    from core.tasks import retry_payout

    if payout.status != PayoutStatus.FAILED:
        return False

    if payout.attempts >= max_attempts():
        logger.error(f"Payout {payout.reference} gave up after {payout.attempts} attempts: {payout.failure_reason}")
        notify_admins(
            f"Payout {payout.reference} ({payout.amount} {payout.currency}) failed {payout.attempts} times "
            f"and needs manual attention. Last error: {payout.failure_reason}",
            'payout_failed',
        )
        notify_on_commit(
            payout.provider.user,
            f"Your payout of {payout.amount} {payout.currency} is delayed. Our team is looking into it.",
            'payout_delayed',
        )
        return False

    countdown = retry_delay(payout.attempts)
    logger.info(f"Payout {payout.reference} retry {payout.attempts + 1} in {countdown}s")
    retry_payout.apply_async(args=[payout.id], countdown=countdown)
    return True


def reconcile_processing(payout_id, gateway=None) -> Payout:
    """
    Settle a payout left in PROCESSING by a worker that died before recording
    the transfer outcome, using what Paystack knows about its reference.

    A transfer Paystack never received is failed and goes through the normal
    retry policy. Verification errors leave the payout for the next run.
    """
    gateway = gateway or paystack.get_gateway()

    payout = Payout.objects.filter(pk=payout_id).first()
    if payout is None:
        raise NotFound(f"Payout {payout_id} not found.", payout_id=payout_id)
    if payout.status != PayoutStatus.PROCESSING:
        return payout

    result = gateway.verify_transfer(payout.reference)
    status = (result.get("status") or "").lower()

    if result.get("success"):
        if status == "success":
            return _complete_payout(payout.id, result.get("transfer_code") or "")
        if status in IN_FLIGHT_TRANSFER_STATUSES:
            return _mark_in_flight(payout.id, result.get("transfer_code") or payout.transfer_code)
        payout = _fail_payout(payout.id, f"paystack_{status or 'failed'}")
    elif status == "error":
        logger.warning(f"Could not verify stuck payout {payout.reference}: {result.get('message')}")
        return payout
    else:
        payout = _fail_payout(payout.id, "transfer_not_found")

    if payout.status == PayoutStatus.FAILED:
        schedule_retry(payout)
    return payout


# =============================================================================
# WEBHOOK
# =============================================================================

def handle_transfer_event(event: str, data: dict):
    """
    Apply a Paystack ``transfer.*`` webhook to the payout with that reference.
    Redeliveries are absorbed by the status checks.
    """
    reference = (data.get("reference") or "").strip()
    if not reference:
        return None

    payout = Payout.objects.filter(reference=reference).first()
    if payout is None:
        logger.warning(f"Transfer webhook {event} for unknown reference {reference}")
        return None

    transfer_code = (data.get("transfer_code") or "").strip()

    if event == "transfer.success":
        if payout.status == PayoutStatus.COMPLETED:
            return payout
        if payout.status == PayoutStatus.CANCELLED:
            logger.error(f"Transfer success for cancelled payout {reference}")
            notify_admins(f"Paystack paid out cancelled payout {reference} after a refund. Manual review needed.")
            return payout
        if payout.status == PayoutStatus.FAILED:
            # A transfer we gave up on landed after all
            logger.warning(f"Late success for failed payout {reference}")
            with transaction.atomic():
                booking, payout = _lock_payout(payout.id)
                transition(payout, PayoutStatus.PENDING, expected=PayoutStatus.FAILED)
                transition(payout, PayoutStatus.PROCESSING, expected=PayoutStatus.PENDING)
        elif payout.status == PayoutStatus.PENDING:
            with transaction.atomic():
                booking, payout = _lock_payout(payout.id)
                transition(payout, PayoutStatus.PROCESSING, expected=PayoutStatus.PENDING)
        return _complete_payout(payout.id, transfer_code)

    if event in ("transfer.failed", "transfer.reversed"):
        if payout.status == PayoutStatus.COMPLETED:
            logger.error(f"Payout {reference} reversed after completion")
            notify_admins(f"Paystack reported {event} for completed payout {reference}. Manual review needed.")
            return payout
        if payout.status != PayoutStatus.PROCESSING:
            return payout
        payout = _fail_payout(payout.id, f"paystack_{event.split('.')[1]}")
        if payout.status == PayoutStatus.FAILED:
            schedule_retry(payout)
        return payout

    logger.info(f"Ignoring transfer event {event} for {reference}")
    return payout
