# core/services/bookings.py

"""
Booking ledger: the only code path that creates bookings or moves them
through the provider-driven part of their lifecycle.

Every operation runs in one transaction and locks the booking row first,
so all writes for a single booking are serialized.
"""

import logging
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from geopy.distance import geodesic

from core.exceptions import NotFound, PermissionDenied, PreconditionError, StateError, ValidationError
from core.models import Booking, BookingStatus, PaymentStatus, Service, ServiceProvider
from core.state_machine import transition
from core.utils.money import fee_breakdown, quantize_money
from core.utils.notifications import notify_booking_parties

logger = logging.getLogger(__name__)

# Cancellation is only possible before the provider starts work
CANCELLABLE_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.PENDING_EXECUTION,
)


def lock_booking(booking_id) -> Booking:
    """Fetch a booking with a row lock. Must be called inside an atomic block."""
    try:
        return Booking.objects.select_for_update().get(pk=booking_id)
    except Booking.DoesNotExist:
        raise NotFound(f"Booking {booking_id} not found.", booking_id=booking_id)


def _require_provider(booking: Booking, provider_id) -> None:
    if booking.provider_id != provider_id:
        logger.warning(f"Provider {provider_id} tried to act on booking #{booking.id}")
        raise PermissionDenied("Only the assigned provider can do this.", booking_id=booking.id)


def _within_service_radius(provider: ServiceProvider, lat, lng) -> bool:
    if None in (provider.location_latitude, provider.location_longitude, lat, lng):
        return True

    radius_km = provider.service_radius_km or getattr(settings, "DEFAULT_SERVICE_RADIUS_KM", Decimal("24.14"))
    distance_km = geodesic(
        (provider.location_latitude, provider.location_longitude),
        (lat, lng),
    ).km
    return Decimal(str(distance_km)) <= Decimal(str(radius_km))


def create_booking(client, provider: ServiceProvider, service: Service, schedule: dict) -> Booking:
    """
    Create a PENDING booking for ``client`` with ``provider``.

    ``schedule`` carries ``scheduled_date``, ``duration`` (minutes),
    ``address`` and optionally ``location_latitude``, ``location_longitude``,
    ``notes`` and ``total_amount`` (defaults to the service's base price).
    """
    if not provider.available:
        raise ValidationError("Provider is not currently available.", provider_id=provider.id)
    if not service.is_active:
        raise ValidationError("Service is not active.", service_id=service.id)
    if provider.user_id == client.id:
        raise ValidationError("You cannot book yourself.")

    scheduled_date = schedule.get("scheduled_date")
    if scheduled_date is None:
        raise ValidationError("A scheduled date is required.")
    if scheduled_date <= timezone.now():
        raise ValidationError("Scheduled date must be in the future.", scheduled_date=scheduled_date)

    duration = schedule.get("duration")
    if not duration or int(duration) <= 0:
        raise ValidationError("Duration must be a positive number of minutes.")

    address = (schedule.get("address") or "").strip()
    if not address:
        raise ValidationError("An address is required.")

    lat = schedule.get("location_latitude")
    lng = schedule.get("location_longitude")
    if not _within_service_radius(provider, lat, lng):
        raise ValidationError("Address is outside the provider's service area.", provider_id=provider.id)

    total_amount = quantize_money(schedule.get("total_amount") or service.base_price)
    _, platform_fee, _ = fee_breakdown(total_amount)

    with transaction.atomic():
        booking = Booking.objects.create(
            client=client,
            provider=provider,
            service=service,
            scheduled_date=scheduled_date,
            duration=int(duration),
            total_amount=total_amount,
            platform_fee=platform_fee,
            address=address,
            location_latitude=lat,
            location_longitude=lng,
            notes=schedule.get("notes") or "",
            status=BookingStatus.PENDING,
        )
        logger.info(f"Booking #{booking.id} created by client {client.id} for provider {provider.id}")

        notify_booking_parties(
            booking,
            f"New booking request for {service.name} on {scheduled_date:%Y-%m-%d %H:%M}.",
            'booking_created',
            client=False,
        )
    return booking


def accept_booking(booking_id, provider_id) -> Booking:
    with transaction.atomic():
        booking = lock_booking(booking_id)
        _require_provider(booking, provider_id)
        transition(booking, BookingStatus.CONFIRMED, expected=BookingStatus.PENDING, accepted_at=timezone.now())

        notify_booking_parties(
            booking,
            f"Your booking #{booking.id} was accepted. Complete payment to secure it.",
            'booking_accepted',
            provider=False,
        )
    return booking


def mark_paid(booking_id) -> Booking:
    """
    CONFIRMED -> PENDING_EXECUTION once the payment is held in escrow.

    Called by the escrow manager inside its own transaction.
    """
    with transaction.atomic():
        booking = lock_booking(booking_id)
        payment = getattr(booking, "payment", None)
        if payment is None or payment.status != PaymentStatus.ESCROW:
            raise PreconditionError(
                f"Booking #{booking.id} has no payment held in escrow.",
                booking_id=booking.id,
                payment_status=getattr(payment, "status", None),
            )
        transition(booking, BookingStatus.PENDING_EXECUTION, expected=BookingStatus.CONFIRMED)
    return booking


def start_job(booking_id, provider_id) -> Booking:
    with transaction.atomic():
        booking = lock_booking(booking_id)
        _require_provider(booking, provider_id)
        transition(
            booking,
            BookingStatus.IN_PROGRESS,
            expected=BookingStatus.PENDING_EXECUTION,
            started_at=timezone.now(),
        )
        notify_booking_parties(booking, f"Your provider has started booking #{booking.id}.", 'job_started', provider=False)
    return booking


def complete_job(booking_id, provider_id, evidence: dict):
    """Provider marks the job done; the proof is recorded in the same transaction."""
    from core.services.job_proofs import submit_proof

    return submit_proof(booking_id, provider_id, evidence)


def cancel_booking(booking_id, user, reason: str = "", gateway=None) -> Booking:
    """
    Cancel a booking before work starts.

    A payment that is pending or in escrow is refunded in the same unit of
    work; if the refund fails the cancellation is rolled back.
    """
    from core.services.escrow import refund

    with transaction.atomic():
        booking = lock_booking(booking_id)

        if user.is_platform_admin:
            cancelled_by = 'admin'
        elif user.id == booking.client_id:
            cancelled_by = 'client'
        elif user.id == booking.provider.user_id:
            cancelled_by = 'provider'
        else:
            raise PermissionDenied("You are not part of this booking.", booking_id=booking.id)

        if booking.status not in CANCELLABLE_STATUSES:
            raise StateError(
                f"Booking #{booking.id} can no longer be cancelled ({booking.status}).",
                current=booking.status,
            )

        payment = getattr(booking, "payment", None)
        if payment is not None and payment.status in (PaymentStatus.PENDING, PaymentStatus.ESCROW):
            refund(payment.id, gateway=gateway, reason=reason or "Booking cancelled")

        transition(
            booking,
            BookingStatus.CANCELLED,
            cancelled_at=timezone.now(),
            cancelled_by=cancelled_by,
        )
        logger.info(f"Booking #{booking.id} cancelled by {cancelled_by} ({user.id}): {reason or 'no reason given'}")

        notify_booking_parties(
            booking,
            f"Booking #{booking.id} was cancelled by the {cancelled_by}." + (f" Reason: {reason}" if reason else ""),
            'booking_cancelled',
        )
    return booking
