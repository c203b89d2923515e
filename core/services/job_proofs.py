# core/services/job_proofs.py

"""
Job proof and confirmation gate.

A provider's proof opens a grace window; funds are released when the client
confirms or, if they stay silent, when the auto-confirm sweep runs after the
window closes. Both paths claim the proof with the same conditional update
(``client_confirmed IS NULL``), so only one of them can start the release.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.exceptions import (
    EscrowError,
    PermissionDenied,
    PreconditionError,
    StateError,
    ValidationError,
)
from core.models import BookingStatus, JobProof, OPEN_DISPUTE_STATUSES
from core.services.bookings import lock_booking
from core.state_machine import assert_transition, transition
from core.utils.notifications import notify_booking_parties

logger = logging.getLogger(__name__)


def grace_period() -> timedelta:
    return timedelta(hours=max(int(getattr(settings, "AUTO_CONFIRM_GRACE_HOURS", 72)), 0))


def _clean_evidence(evidence) -> tuple[list, str]:
    evidence = evidence or {}
    photos = evidence.get("photos") or []
    if not isinstance(photos, (list, tuple)) or not all(isinstance(p, str) and p for p in photos):
        raise ValidationError("Photos must be a list of URLs.")
    notes = evidence.get("notes") or ""
    if not photos and not notes.strip():
        raise ValidationError("Provide at least one photo or a note as proof of completion.")
    return list(photos), notes


def submit_proof(booking_id, provider_id, evidence) -> JobProof:
    """IN_PROGRESS -> AWAITING_CONFIRMATION, recording the proof in the same transaction."""
    photos, notes = _clean_evidence(evidence)

    with transaction.atomic():
        booking = lock_booking(booking_id)
        if booking.provider_id != provider_id:
            raise PermissionDenied("Only the assigned provider can complete this job.", booking_id=booking.id)
        assert_transition(type(booking), booking.status, BookingStatus.AWAITING_CONFIRMATION)
        if JobProof.objects.filter(booking=booking).exists():
            raise StateError(f"Booking #{booking.id} already has a job proof.", booking_id=booking.id)

        now = timezone.now()
        proof = JobProof.objects.create(
            booking=booking,
            provider_id=provider_id,
            photos=photos,
            notes=notes,
            completed_at=now,
            auto_confirm_at=now + grace_period(),
        )
        transition(booking, BookingStatus.AWAITING_CONFIRMATION, expected=BookingStatus.IN_PROGRESS)

        logger.info(f"Proof submitted for booking #{booking.id}; auto-confirm at {proof.auto_confirm_at.isoformat()}")
        notify_booking_parties(
            booking,
            f"Your provider marked booking #{booking.id} as done. Please confirm, or it will be "
            f"confirmed automatically on {proof.auto_confirm_at:%Y-%m-%d %H:%M}.",
            'job_completed',
            provider=False,
        )
    return proof


def _claim_proof(proof: JobProof, confirmed_by: str, value: bool = True) -> bool:
    """Set client_confirmed once. Returns False if someone else already did."""
    now = timezone.now()
    claimed = JobProof.objects.filter(pk=proof.pk, client_confirmed__isnull=True).update(
        client_confirmed=value,
        confirmed_at=now,
        confirmed_by=confirmed_by,
    )
    if claimed:
        proof.client_confirmed = value
        proof.confirmed_at = now
        proof.confirmed_by = confirmed_by
    return bool(claimed)


def confirm_by_client(booking_id, client_id, *, confirmed_by='client'):
    """
    Confirm the job and start the release of escrowed funds.

    ``client_id`` of None means the sweep is confirming on the client's
    behalf. Confirming an already confirmed proof is a no-op and returns
    None; otherwise the new Payout is returned.
    """
    from core.services.escrow import initiate_release

    with transaction.atomic():
        booking = lock_booking(booking_id)
        if client_id is not None and booking.client_id != client_id:
            raise PermissionDenied("Only the booking's client can confirm the job.", booking_id=booking.id)

        proof = JobProof.objects.filter(booking=booking).first()
        if proof is None:
            raise StateError(f"Booking #{booking.id} has no job proof to confirm.", current=booking.status)
        if proof.client_confirmed is not None:
            logger.info(f"Booking #{booking.id} already confirmed by {proof.confirmed_by}, nothing to do")
            return None

        if booking.has_open_dispute():
            raise PreconditionError(f"Booking #{booking.id} is under dispute.", booking_id=booking.id)
        if booking.status != BookingStatus.AWAITING_CONFIRMATION:
            raise StateError(
                f"Booking #{booking.id} is {booking.status}, not awaiting confirmation.",
                current=booking.status,
            )

        if not _claim_proof(proof, confirmed_by):
            logger.info(f"Booking #{booking.id} was confirmed concurrently, skipping release")
            return None

        payout = initiate_release(booking.payment.id)
        logger.info(f"Booking #{booking.id} confirmed by {confirmed_by}; payout {payout.reference} queued")

        notify_booking_parties(
            booking,
            f"Booking #{booking.id} confirmed. {payout.amount} {payout.currency} is on its way to the provider.",
            'job_confirmed',
        )
    return payout


def auto_confirm_sweep(now=None) -> list:
    """
    Confirm every overdue proof whose client stayed silent and whose booking
    is not under dispute. Returns the ids of the bookings it confirmed.

    Safe to run repeatedly or alongside manual confirmations.
    """
    now = now or timezone.now()
    due = (
        JobProof.objects.filter(
            client_confirmed__isnull=True,
            auto_confirm_at__lte=now,
            booking__status=BookingStatus.AWAITING_CONFIRMATION,
        )
        .exclude(booking__dispute__status__in=OPEN_DISPUTE_STATUSES)
        .order_by("auto_confirm_at")
        .values_list("booking_id", flat=True)
    )

    confirmed = []
    for booking_id in list(due):
        try:
            payout = confirm_by_client(booking_id, None, confirmed_by='system')
        except EscrowError as e:
            # One stuck booking must not hold up the rest of the sweep
            logger.warning(f"Auto-confirm skipped booking #{booking_id}: {e}")
            continue
        if payout is not None:
            confirmed.append(booking_id)

    if confirmed:
        logger.info(f"Auto-confirmed {len(confirmed)} booking(s): {confirmed}")
    return confirmed
