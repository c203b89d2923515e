"""
End-to-end runs of a 1000.00 booking through escrow, from charge to payout.
"""

from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.utils import timezone

from core.models import BookingStatus, PaymentStatus, Payout, PayoutStatus
from core.services import bookings, disputes, escrow, job_proofs
from core.tests.helpers import EscrowTestCase


@contextmanager
def frozen_at(moment):
    with mock.patch("django.utils.timezone.now", return_value=moment):
        yield


class EscrowLifecycleScenarios(EscrowTestCase):

    def paid_and_proved(self, t0):
        booking = self.make_booking()
        self.assertEqual(booking.total_amount, Decimal("1000.00"))
        self.assertEqual(booking.platform_fee, Decimal("100.00"))

        bookings.accept_booking(booking.id, self.provider.id)
        payment = escrow.charge(booking, self.AUTH)
        self.assertEqual(payment.status, PaymentStatus.ESCROW)
        self.assertEqual(payment.escrow_amount, Decimal("900.00"))

        bookings.start_job(booking.id, self.provider.id)
        with frozen_at(t0):
            proof = job_proofs.submit_proof(booking.id, self.provider.id, {"notes": "All done, keys under the mat"})
        self.assertEqual(proof.auto_confirm_at, t0 + timedelta(hours=72))
        return booking, proof

    def assert_paid_out(self, booking):
        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.COMPLETED)
        self.assertEqual(booking.payment.status, PaymentStatus.RELEASED)
        payout = booking.payment.payout
        self.assertEqual(payout.amount, Decimal("900.00"))
        self.assertEqual(payout.status, PayoutStatus.COMPLETED)
        self.assertEqual(payout.amount + booking.payment.platform_fee, booking.payment.amount)

    def test_client_confirms_within_grace_period(self):
        t0 = timezone.now()
        booking, _ = self.paid_and_proved(t0)

        with frozen_at(t0 + timedelta(hours=1)), self.captureOnCommitCallbacks(execute=True):
            job_proofs.confirm_by_client(booking.id, self.client_user.id)

        self.assert_paid_out(booking)
        self.assertEqual(self.reload(booking).job_proof.confirmed_by, "client")

    def test_silent_client_is_auto_confirmed(self):
        t0 = timezone.now()
        booking, _ = self.paid_and_proved(t0)

        self.assertEqual(job_proofs.auto_confirm_sweep(now=t0 + timedelta(hours=71)), [])
        with self.captureOnCommitCallbacks(execute=True):
            confirmed = job_proofs.auto_confirm_sweep(now=t0 + timedelta(hours=73))

        self.assertEqual(confirmed, [booking.id])
        self.assert_paid_out(booking)
        self.assertEqual(self.reload(booking).job_proof.confirmed_by, "system")

    def test_dispute_blocks_auto_confirm(self):
        t0 = timezone.now()
        booking, proof = self.paid_and_proved(t0)

        with frozen_at(t0 + timedelta(hours=2)):
            disputes.raise_dispute(booking.id, self.client_user, "The oven was not cleaned")

        with self.captureOnCommitCallbacks(execute=True):
            confirmed = job_proofs.auto_confirm_sweep(now=t0 + timedelta(hours=73))

        self.assertEqual(confirmed, [])
        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.DISPUTED)
        self.assertEqual(booking.payment.status, PaymentStatus.ESCROW)
        self.assertIsNone(self.reload(proof).client_confirmed)
        self.assertFalse(Payout.objects.exists())
        self.assertEqual(self.gateway.calls_to("create_transfer"), [])
