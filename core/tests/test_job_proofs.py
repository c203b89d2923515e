from datetime import timedelta

from django.db import IntegrityError, transaction
from django.test import override_settings

from core.exceptions import PermissionDenied, PreconditionError, StateError, ValidationError
from core.models import BookingStatus, JobProof, Payment, PaymentStatus, Payout, PayoutStatus
from core.services import disputes, job_proofs
from core.tests.helpers import EscrowTestCase


class SubmitProofTests(EscrowTestCase):

    def test_proof_opens_grace_window(self):
        booking, proof = self.make_awaiting()

        self.assertEqual(booking.status, BookingStatus.AWAITING_CONFIRMATION)
        self.assertIsNone(proof.client_confirmed)
        self.assertEqual(proof.auto_confirm_at - proof.completed_at, timedelta(hours=72))
        self.assertEqual(proof.photos, ["https://cdn.example.com/after.jpg"])

    @override_settings(AUTO_CONFIRM_GRACE_HOURS=24)
    def test_grace_period_is_configurable(self):
        _, proof = self.make_awaiting()
        self.assertEqual(proof.auto_confirm_at - proof.completed_at, timedelta(hours=24))

    def test_deadline_cannot_precede_completion(self):
        _, proof = self.make_awaiting()
        with self.assertRaises(IntegrityError), transaction.atomic():
            JobProof.objects.filter(pk=proof.pk).update(auto_confirm_at=proof.completed_at - timedelta(minutes=1))

    def test_proof_requires_job_in_progress(self):
        booking = self.make_paid()
        with self.assertRaises(StateError):
            job_proofs.submit_proof(booking.id, self.provider.id, {"notes": "done"})
        self.assertFalse(JobProof.objects.exists())
        self.assertEqual(self.reload(booking).status, BookingStatus.PENDING_EXECUTION)

    def test_proof_requires_evidence(self):
        booking = self.make_in_progress()
        for evidence in ({}, {"photos": [], "notes": "   "}, {"photos": "not-a-list"}):
            with self.assertRaises(ValidationError):
                job_proofs.submit_proof(booking.id, self.provider.id, evidence)
        self.assertEqual(self.reload(booking).status, BookingStatus.IN_PROGRESS)

    def test_only_assigned_provider_submits(self):
        booking = self.make_in_progress()
        with self.assertRaises(PermissionDenied):
            job_proofs.submit_proof(booking.id, self.provider.id + 999, {"notes": "done"})


class ConfirmTests(EscrowTestCase):

    def test_client_confirmation_starts_release(self):
        booking, proof = self.make_awaiting()
        payout = job_proofs.confirm_by_client(booking.id, self.client_user.id)

        proof = self.reload(proof)
        self.assertTrue(proof.client_confirmed)
        self.assertEqual(proof.confirmed_by, "client")
        self.assertEqual(payout.status, PayoutStatus.PENDING)
        self.assertEqual(self.reload(booking).payment.status, PaymentStatus.PROCESSING_RELEASE)

    def test_second_confirmation_is_a_no_op(self):
        booking, _ = self.make_awaiting()
        job_proofs.confirm_by_client(booking.id, self.client_user.id)

        self.assertIsNone(job_proofs.confirm_by_client(booking.id, self.client_user.id))
        self.assertEqual(Payout.objects.count(), 1)

    def test_only_client_confirms(self):
        booking, _ = self.make_awaiting()
        for user in (self.provider_user, self.stranger):
            with self.assertRaises(PermissionDenied):
                job_proofs.confirm_by_client(booking.id, user.id)
        self.assertFalse(Payout.objects.exists())

    def test_confirm_without_proof_is_a_state_error(self):
        booking = self.make_in_progress()
        with self.assertRaises(StateError):
            job_proofs.confirm_by_client(booking.id, self.client_user.id)

    def test_dispute_blocks_confirmation(self):
        booking, _ = self.make_awaiting()
        disputes.raise_dispute(booking.id, self.client_user, "Work not finished")

        with self.assertRaises(PreconditionError):
            job_proofs.confirm_by_client(booking.id, self.client_user.id)
        self.assertFalse(Payout.objects.exists())

    def test_confirmation_completes_booking_once_paid_out(self):
        booking, _ = self.make_awaiting()
        with self.captureOnCommitCallbacks(execute=True):
            job_proofs.confirm_by_client(booking.id, self.client_user.id)

        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.COMPLETED)
        self.assertEqual(booking.payment.status, PaymentStatus.RELEASED)
        self.assertEqual(booking.payment.payout.status, PayoutStatus.COMPLETED)


class AutoConfirmSweepTests(EscrowTestCase):

    def test_nothing_due_inside_grace_window(self):
        _, proof = self.make_awaiting()
        self.assertEqual(job_proofs.auto_confirm_sweep(now=proof.auto_confirm_at - timedelta(minutes=1)), [])
        self.assertIsNone(self.reload(proof).client_confirmed)

    def test_overdue_proof_is_confirmed_by_system(self):
        booking, proof = self.make_awaiting()

        confirmed = job_proofs.auto_confirm_sweep(now=proof.completed_at + timedelta(hours=73))

        self.assertEqual(confirmed, [booking.id])
        proof = self.reload(proof)
        self.assertTrue(proof.client_confirmed)
        self.assertEqual(proof.confirmed_by, "system")
        self.assertEqual(Payout.objects.get().status, PayoutStatus.PENDING)

    def test_sweep_is_idempotent(self):
        _, proof = self.make_awaiting()
        later = proof.completed_at + timedelta(hours=73)

        job_proofs.auto_confirm_sweep(now=later)
        self.assertEqual(job_proofs.auto_confirm_sweep(now=later), [])
        self.assertEqual(Payout.objects.count(), 1)

    def test_sweep_after_manual_confirmation_releases_nothing(self):
        booking, proof = self.make_awaiting()
        job_proofs.confirm_by_client(booking.id, self.client_user.id)

        self.assertEqual(job_proofs.auto_confirm_sweep(now=proof.completed_at + timedelta(hours=73)), [])
        self.assertEqual(Payout.objects.count(), 1)
        self.assertEqual(self.reload(proof).confirmed_by, "client")

    def test_sweep_that_loses_the_race_is_a_no_op(self):
        # The sweep picked the booking, then the client confirmed first
        booking, _ = self.make_awaiting()
        job_proofs.confirm_by_client(booking.id, self.client_user.id)

        self.assertIsNone(job_proofs.confirm_by_client(booking.id, None, confirmed_by="system"))
        self.assertEqual(Payout.objects.count(), 1)

    def test_proof_can_only_be_claimed_once(self):
        _, proof = self.make_awaiting()
        self.assertTrue(job_proofs._claim_proof(proof, "system"))
        self.assertFalse(job_proofs._claim_proof(JobProof.objects.get(pk=proof.pk), "client"))
        self.assertEqual(self.reload(proof).confirmed_by, "system")

    def test_sweep_skips_disputed_bookings(self):
        booking, proof = self.make_awaiting()
        disputes.raise_dispute(booking.id, self.client_user, "Broken tiles")

        self.assertEqual(job_proofs.auto_confirm_sweep(now=proof.completed_at + timedelta(hours=100)), [])
        self.assertIsNone(self.reload(proof).client_confirmed)
        self.assertFalse(Payout.objects.exists())

    def test_one_bad_booking_does_not_stop_the_sweep(self):
        first, first_proof = self.make_awaiting()
        second, _ = self.make_awaiting()
        # The first payment was refunded behind the sweep's back, so its release is rejected
        Payment.objects.filter(pk=first.payment.pk).update(status=PaymentStatus.REFUNDED)

        confirmed = job_proofs.auto_confirm_sweep(now=first_proof.completed_at + timedelta(hours=73))

        self.assertEqual(confirmed, [second.id])
        self.assertIsNone(self.reload(first_proof).client_confirmed)
