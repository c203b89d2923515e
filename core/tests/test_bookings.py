from datetime import timedelta
from decimal import Decimal

from django.utils import timezone

from core.exceptions import ExternalServiceError, PermissionDenied, PreconditionError, StateError, ValidationError
from core.models import BookingStatus, Notification, PaymentStatus
from core.services import bookings
from core.tests.helpers import EscrowTestCase


class CreateBookingTests(EscrowTestCase):

    def test_creates_pending_booking_with_fee(self):
        with self.captureOnCommitCallbacks(execute=True):
            booking = self.make_booking()

        self.assertEqual(booking.status, BookingStatus.PENDING)
        self.assertEqual(booking.total_amount, Decimal("1000.00"))
        self.assertEqual(booking.platform_fee, Decimal("100.00"))
        self.assertTrue(
            Notification.objects.filter(user=self.provider_user, notification_type="booking_created").exists()
        )

    def test_explicit_total_overrides_base_price(self):
        booking = self.make_booking(total_amount=Decimal("250.005"))
        self.assertEqual(booking.total_amount, Decimal("250.01"))
        self.assertEqual(booking.platform_fee, Decimal("25.00"))

    def test_unavailable_provider_rejected(self):
        self.provider.available = False
        self.provider.save()
        with self.assertRaises(ValidationError):
            self.make_booking()

    def test_inactive_service_rejected(self):
        self.service.is_active = False
        self.service.save()
        with self.assertRaises(ValidationError):
            self.make_booking()

    def test_past_date_rejected(self):
        with self.assertRaises(ValidationError):
            self.make_booking(scheduled_date=timezone.now() - timedelta(hours=1))

    def test_non_positive_duration_rejected(self):
        with self.assertRaises(ValidationError):
            self.make_booking(duration=0)

    def test_provider_cannot_book_themselves(self):
        with self.assertRaises(ValidationError):
            bookings.create_booking(self.provider_user, self.provider, self.service, self.schedule())

    def test_address_outside_service_radius_rejected(self):
        # Johannesburg CBD, default radius
        self.provider.location_latitude = -26.2041
        self.provider.location_longitude = 28.0473
        self.provider.save()

        booking = self.make_booking(location_latitude=-26.1076, location_longitude=28.0567)  # Sandton
        self.assertEqual(booking.status, BookingStatus.PENDING)

        with self.assertRaises(ValidationError):
            self.make_booking(location_latitude=-33.9249, location_longitude=18.4241)  # Cape Town


class ProviderLifecycleTests(EscrowTestCase):

    def test_accept_moves_to_confirmed(self):
        booking = self.make_booking()
        bookings.accept_booking(booking.id, self.provider.id)
        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.CONFIRMED)
        self.assertIsNotNone(booking.accepted_at)

    def test_accept_twice_is_a_state_error(self):
        booking = self.make_confirmed()
        with self.assertRaises(StateError):
            bookings.accept_booking(booking.id, self.provider.id)

    def test_only_assigned_provider_can_accept(self):
        booking = self.make_booking()
        with self.assertRaises(PermissionDenied):
            bookings.accept_booking(booking.id, self.provider.id + 999)
        self.assertEqual(self.reload(booking).status, BookingStatus.PENDING)

    def test_mark_paid_requires_escrowed_payment(self):
        booking = self.make_confirmed()
        with self.assertRaises(PreconditionError):
            bookings.mark_paid(booking.id)
        self.assertEqual(self.reload(booking).status, BookingStatus.CONFIRMED)

    def test_cannot_start_before_payment(self):
        booking = self.make_confirmed()
        with self.assertRaises(StateError):
            bookings.start_job(booking.id, self.provider.id)

    def test_start_after_payment(self):
        booking = self.make_in_progress()
        self.assertEqual(booking.status, BookingStatus.IN_PROGRESS)
        self.assertIsNotNone(booking.started_at)

    def test_complete_job_records_proof(self):
        booking = self.make_in_progress()
        proof = bookings.complete_job(booking.id, self.provider.id, {"notes": "Kitchen and bathrooms done"})
        self.assertEqual(proof.notes, "Kitchen and bathrooms done")
        self.assertEqual(self.reload(booking).status, BookingStatus.AWAITING_CONFIRMATION)


class CancelBookingTests(EscrowTestCase):

    def test_client_cancels_pending_booking(self):
        booking = self.make_booking()
        bookings.cancel_booking(booking.id, self.client_user, "Changed plans")

        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.CANCELLED)
        self.assertEqual(booking.cancelled_by, "client")
        self.assertEqual(self.gateway.calls_to("refund"), [])

    def test_provider_cancels_confirmed_booking(self):
        booking = self.make_confirmed()
        bookings.cancel_booking(booking.id, self.provider_user)
        self.assertEqual(self.reload(booking).cancelled_by, "provider")

    def test_cancel_after_payment_refunds(self):
        booking = self.make_paid()
        bookings.cancel_booking(booking.id, self.client_user, "Found someone closer")

        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.CANCELLED)
        self.assertEqual(booking.payment.status, PaymentStatus.REFUNDED)
        self.assertEqual(booking.payment.refund_ref, "4242")
        [refund_call] = self.gateway.calls_to("refund")
        self.assertEqual(refund_call["amount"], Decimal("1000.00"))

    def test_failed_refund_rolls_back_cancellation(self):
        booking = self.make_paid()
        self.gateway.refund_success = False

        with self.assertRaises(ExternalServiceError):
            bookings.cancel_booking(booking.id, self.client_user)

        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.PENDING_EXECUTION)
        self.assertEqual(booking.payment.status, PaymentStatus.ESCROW)

    def test_cannot_cancel_once_work_started(self):
        booking = self.make_in_progress()
        with self.assertRaises(StateError):
            bookings.cancel_booking(booking.id, self.client_user)
        self.assertEqual(self.reload(booking).status, BookingStatus.IN_PROGRESS)

    def test_stranger_cannot_cancel(self):
        booking = self.make_booking()
        with self.assertRaises(PermissionDenied):
            bookings.cancel_booking(booking.id, self.stranger)

    def test_admin_cancel_is_recorded(self):
        booking = self.make_confirmed()
        bookings.cancel_booking(booking.id, self.admin_user, "Fraud check")
        self.assertEqual(self.reload(booking).cancelled_by, "admin")
