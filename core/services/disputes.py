# core/services/disputes.py

"""
Dispute handler. An open dispute (PENDING or ESCALATED) puts a hold on the
booking's funds until an admin resolves it one way or the other.
"""

import logging

from django.db import transaction
from django.utils import timezone

from core.exceptions import NotFound, PermissionDenied, StateError, ValidationError
from core.models import (
    BookingStatus,
    Dispute,
    DisputeOutcome,
    DisputeStatus,
    JobProof,
    PaymentStatus,
    PayoutStatus,
)
from core.services.bookings import lock_booking
from core.state_machine import transition
from core.utils.notifications import notify_admins, notify_booking_parties

logger = logging.getLogger(__name__)


def _lock_dispute(dispute_id):
    dispute = Dispute.objects.filter(pk=dispute_id).first()
    if dispute is None:
        raise NotFound(f"Dispute {dispute_id} not found.", dispute_id=dispute_id)
    booking = lock_booking(dispute.booking_id)
    dispute = Dispute.objects.select_for_update().get(pk=dispute_id)
    return booking, dispute


def raise_dispute(booking_id, raised_by, reason: str) -> Dispute:
    """
    Open a dispute on a booking awaiting confirmation. Allowed for either
    party as long as the provider has not been paid.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Please describe the problem.")

    with transaction.atomic():
        booking = lock_booking(booking_id)
        if not booking.is_participant(raised_by):
            raise PermissionDenied("You are not part of this booking.", booking_id=booking.id)

        if Dispute.objects.filter(booking=booking).exists():
            raise StateError(f"Booking #{booking.id} already has a dispute.", current=booking.status)

        payment = getattr(booking, "payment", None)
        payout = getattr(payment, "payout", None) if payment is not None else None
        if payout is not None and payout.status == PayoutStatus.COMPLETED:
            raise StateError(f"Booking #{booking.id} has already been paid out.", current=payout.status)

        transition(booking, BookingStatus.DISPUTED, expected=BookingStatus.AWAITING_CONFIRMATION)
        dispute = Dispute.objects.create(
            booking=booking,
            raised_by=raised_by,
            reason=reason,
            status=DisputeStatus.PENDING,
        )

        logger.info(f"Dispute #{dispute.id} raised on booking #{booking.id} by user {raised_by.id}")
        notify_booking_parties(
            booking,
            f"A dispute was opened on booking #{booking.id}. Payment is on hold until it is resolved.",
            'dispute_opened',
        )
        notify_admins(f"New dispute #{dispute.id} on booking #{booking.id}: {reason[:200]}", 'dispute_opened')
    return dispute


def escalate(dispute_id, user) -> Dispute:
    """PENDING -> ESCALATED. The hold on the funds stays in place."""
    with transaction.atomic():
        booking, dispute = _lock_dispute(dispute_id)
        if not (user.is_platform_admin or booking.is_participant(user)):
            raise PermissionDenied("You cannot escalate this dispute.", dispute_id=dispute.id)

        transition(dispute, DisputeStatus.ESCALATED, expected=DisputeStatus.PENDING)
        logger.info(f"Dispute #{dispute.id} escalated by user {user.id}")
        notify_admins(f"Dispute #{dispute.id} on booking #{booking.id} was escalated.", 'dispute_escalated')
    return dispute


def resolve(dispute_id, resolved_by, resolution: str, outcome: str, gateway=None) -> Dispute:
    """
    Close a dispute. RELEASE pays the provider as if the client had
    confirmed; REFUND returns the money to the client and cancels the booking.
    A REFUND is refused with PreconditionError while a transfer to the
    provider is in flight; the dispute then stays open.
    """
    from core.services.escrow import initiate_release, refund
    from core.tasks import dispatch_payout, retry_payout

    if not resolved_by.is_platform_admin:
        raise PermissionDenied("Only admins can resolve disputes.")
    if outcome not in DisputeOutcome.values:
        raise ValidationError(f"Outcome must be one of {', '.join(DisputeOutcome.values)}.", outcome=outcome)

    with transaction.atomic():
        booking, dispute = _lock_dispute(dispute_id)
        now = timezone.now()

        # Close the dispute first so the release check sees no open hold
        transition(
            dispute,
            DisputeStatus.RESOLVED,
            resolved_by=resolved_by,
            resolution=resolution or "",
            outcome=outcome,
            resolved_at=now,
        )

        payment = getattr(booking, "payment", None)
        if payment is None:
            raise StateError(f"Booking #{booking.id} has no payment to settle.", booking_id=booking.id)

        if outcome == DisputeOutcome.RELEASE:
            JobProof.objects.filter(booking=booking, client_confirmed__isnull=True).update(
                client_confirmed=True,
                confirmed_at=now,
                confirmed_by='dispute',
            )
            transition(booking, BookingStatus.COMPLETED, expected=BookingStatus.DISPUTED, completed_at=now)

            if payment.status == PaymentStatus.ESCROW:
                initiate_release(payment.id)
            elif payment.status == PaymentStatus.PROCESSING_RELEASE:
                # Release had already started before the dispute put it on hold
                payout = getattr(payment, "payout", None)
                if payout is not None and payout.status == PayoutStatus.FAILED:
                    transaction.on_commit(lambda: retry_payout.delay(payout.id))
                elif payout is None or payout.status == PayoutStatus.PENDING:
                    transaction.on_commit(lambda: dispatch_payout.delay(payment.id))
        else:
            # A release put on hold is refunded too, as long as its payout never left
            refund(
                payment.id,
                gateway=gateway,
                reason=f"Dispute #{dispute.id} resolved in client's favour",
                cancel_unsent_payout=True,
            )
            transition(
                booking,
                BookingStatus.CANCELLED,
                expected=BookingStatus.DISPUTED,
                cancelled_at=now,
                cancelled_by='admin',
            )

        logger.info(f"Dispute #{dispute.id} resolved by {resolved_by.id}: {outcome}")
        notify_booking_parties(
            booking,
            f"Dispute on booking #{booking.id} resolved: "
            + ("payment released to the provider." if outcome == DisputeOutcome.RELEASE else "payment refunded to the client."),
            'dispute_resolved',
        )
    return dispute
