from core.exceptions import (
    ExternalServiceError,
    PermissionDenied,
    PreconditionError,
    StateError,
    ValidationError,
)
from core.models import (
    BookingStatus,
    Dispute,
    DisputeOutcome,
    DisputeStatus,
    Notification,
    PaymentStatus,
    Payout,
    PayoutStatus,
)
from core import tasks
from core.services import disputes, escrow, job_proofs, payouts
from core.tests.helpers import EscrowTestCase


class RaiseDisputeTests(EscrowTestCase):

    def test_client_raises_dispute(self):
        booking, _ = self.make_awaiting()
        with self.captureOnCommitCallbacks(execute=True):
            dispute = disputes.raise_dispute(booking.id, self.client_user, "Only half the rooms were cleaned")

        self.assertEqual(dispute.status, DisputeStatus.PENDING)
        self.assertEqual(self.reload(booking).status, BookingStatus.DISPUTED)
        self.assertEqual(self.reload(booking).payment.status, PaymentStatus.ESCROW)
        self.assertTrue(Notification.objects.filter(user=self.admin_user, notification_type="dispute_opened").exists())

    def test_provider_may_raise_dispute(self):
        booking, _ = self.make_awaiting()
        dispute = disputes.raise_dispute(booking.id, self.provider_user, "Client refuses to confirm")
        self.assertEqual(dispute.raised_by, self.provider_user)

    def test_stranger_cannot_raise_dispute(self):
        booking, _ = self.make_awaiting()
        with self.assertRaises(PermissionDenied):
            disputes.raise_dispute(booking.id, self.stranger, "Not my booking")
        self.assertFalse(Dispute.objects.exists())

    def test_reason_is_required(self):
        booking, _ = self.make_awaiting()
        with self.assertRaises(ValidationError):
            disputes.raise_dispute(booking.id, self.client_user, "   ")

    def test_only_while_awaiting_confirmation(self):
        booking = self.make_in_progress()
        with self.assertRaises(StateError):
            disputes.raise_dispute(booking.id, self.client_user, "Too slow")
        self.assertFalse(Dispute.objects.exists())

    def test_second_dispute_is_rejected(self):
        booking, _ = self.make_awaiting()
        disputes.raise_dispute(booking.id, self.client_user, "Broken vase")
        with self.assertRaises(StateError):
            disputes.raise_dispute(booking.id, self.provider_user, "Vase was already broken")

    def test_no_dispute_after_payout(self):
        booking, _ = self.make_awaiting()
        with self.captureOnCommitCallbacks(execute=True):
            job_proofs.confirm_by_client(booking.id, self.client_user.id)

        with self.assertRaises(StateError):
            disputes.raise_dispute(booking.id, self.client_user, "Changed my mind")

    def test_escalation_keeps_the_hold(self):
        booking, proof = self.make_awaiting()
        dispute = disputes.raise_dispute(booking.id, self.client_user, "No response from provider")

        dispute = disputes.escalate(dispute.id, self.client_user)

        self.assertEqual(dispute.status, DisputeStatus.ESCALATED)
        with self.assertRaises(PreconditionError):
            job_proofs.confirm_by_client(booking.id, self.client_user.id)
        with self.assertRaises(StateError):
            disputes.escalate(dispute.id, self.client_user)


class ResolveDisputeTests(EscrowTestCase):

    def disputed(self):
        booking, proof = self.make_awaiting()
        dispute = disputes.raise_dispute(booking.id, self.client_user, "Paint on the floor")
        return booking, proof, dispute

    def test_only_admin_resolves(self):
        _, _, dispute = self.disputed()
        for user in (self.client_user, self.provider_user):
            with self.assertRaises(PermissionDenied):
                disputes.resolve(dispute.id, user, "Looks fine", DisputeOutcome.RELEASE)
        self.assertEqual(self.reload(dispute).status, DisputeStatus.PENDING)

    def test_invalid_outcome_rejected(self):
        _, _, dispute = self.disputed()
        with self.assertRaises(ValidationError):
            disputes.resolve(dispute.id, self.admin_user, "", "SPLIT")

    def test_release_pays_provider(self):
        booking, proof, dispute = self.disputed()

        with self.captureOnCommitCallbacks(execute=True):
            dispute = disputes.resolve(dispute.id, self.admin_user, "Photos show the job was done", DisputeOutcome.RELEASE)

        self.assertEqual(dispute.status, DisputeStatus.RESOLVED)
        self.assertEqual(dispute.outcome, DisputeOutcome.RELEASE)
        self.assertEqual(dispute.resolved_by, self.admin_user)
        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.COMPLETED)
        self.assertEqual(booking.payment.status, PaymentStatus.RELEASED)
        self.assertEqual(booking.payment.payout.status, PayoutStatus.COMPLETED)
        self.assertEqual(self.reload(proof).confirmed_by, "dispute")

    def test_refund_returns_money_to_client(self):
        booking, proof, dispute = self.disputed()

        dispute = disputes.resolve(dispute.id, self.admin_user, "Job not done", DisputeOutcome.REFUND)

        self.assertEqual(dispute.outcome, DisputeOutcome.REFUND)
        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.CANCELLED)
        self.assertEqual(booking.cancelled_by, "admin")
        self.assertEqual(booking.payment.status, PaymentStatus.REFUNDED)
        self.assertFalse(hasattr(booking.payment, "payout"))
        self.assertEqual(len(self.gateway.calls_to("refund")), 1)

    def test_failed_refund_leaves_dispute_open(self):
        booking, _, dispute = self.disputed()
        self.gateway.refund_success = False

        with self.assertRaises(ExternalServiceError):
            disputes.resolve(dispute.id, self.admin_user, "Job not done", DisputeOutcome.REFUND)

        self.assertEqual(self.reload(dispute).status, DisputeStatus.PENDING)
        self.assertEqual(self.reload(booking).status, BookingStatus.DISPUTED)
        self.assertEqual(self.reload(booking).payment.status, PaymentStatus.ESCROW)

    def test_resolving_twice_is_rejected(self):
        _, _, dispute = self.disputed()
        disputes.resolve(dispute.id, self.admin_user, "Refund", DisputeOutcome.REFUND)
        with self.assertRaises(StateError):
            disputes.resolve(dispute.id, self.admin_user, "Release", DisputeOutcome.RELEASE)

    def test_release_resumes_payout_put_on_hold(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        dispute = disputes.raise_dispute(booking.id, self.client_user, "Wait, one window is cracked")

        with self.captureOnCommitCallbacks(execute=True):
            disputes.resolve(dispute.id, self.admin_user, "Crack was pre-existing", DisputeOutcome.RELEASE)

        booking = self.reload(booking)
        self.assertEqual(booking.payment.payout.status, PayoutStatus.COMPLETED)
        self.assertEqual(booking.payment.status, PaymentStatus.RELEASED)
        self.assertEqual(len(self.gateway.calls_to("create_transfer")), 1)

    def test_release_retries_payout_that_failed_before_dispute(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        self.gateway.transfer_outcomes = ["error"]
        payouts.dispatch(booking.payment.id)
        dispute = disputes.raise_dispute(booking.id, self.client_user, "Wait")

        with self.captureOnCommitCallbacks(execute=True):
            disputes.resolve(dispute.id, self.admin_user, "Pay the provider", DisputeOutcome.RELEASE)

        payout = self.reload(booking).payment.payout
        self.assertEqual(payout.status, PayoutStatus.COMPLETED)
        self.assertEqual(payout.attempts, 2)

    def test_refund_cancels_payout_put_on_hold(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        dispute = disputes.raise_dispute(booking.id, self.client_user, "Geyser still leaks")

        with self.captureOnCommitCallbacks(execute=True):
            dispute = disputes.resolve(dispute.id, self.admin_user, "Repair failed", DisputeOutcome.REFUND)

        self.assertEqual(dispute.status, DisputeStatus.RESOLVED)
        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.CANCELLED)
        self.assertEqual(booking.payment.status, PaymentStatus.REFUNDED)
        self.assertEqual(booking.payment.refund_ref, "4242")
        self.assertEqual(booking.payment.payout.status, PayoutStatus.CANCELLED)
        self.assertEqual(len(self.gateway.calls_to("refund")), 1)
        self.assertEqual(self.gateway.calls_to("create_transfer"), [])

        result = tasks.dispatch_payout(booking.payment.id)
        self.assertFalse(result["success"])
        self.assertEqual(self.gateway.calls_to("create_transfer"), [])

    def test_refund_cancels_payout_whose_transfer_never_landed(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        self.gateway.transfer_outcomes = ["error"]
        payouts.dispatch(booking.payment.id)
        dispute = disputes.raise_dispute(booking.id, self.client_user, "Wrong colour paint")

        disputes.resolve(dispute.id, self.admin_user, "Redo at provider's cost", DisputeOutcome.REFUND)

        payout = self.reload(booking).payment.payout
        self.assertEqual(payout.status, PayoutStatus.CANCELLED)
        self.assertEqual(self.reload(booking).payment.status, PaymentStatus.REFUNDED)
        [check] = self.gateway.calls_to("verify_transfer")
        self.assertEqual(check["reference"], payout.reference)

    def test_refund_refused_while_transfer_in_flight(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        dispute = disputes.raise_dispute(booking.id, self.client_user, "Wait")
        Payout.objects.filter(payment=booking.payment).update(status=PayoutStatus.PROCESSING, attempts=1)

        with self.assertRaises(PreconditionError):
            disputes.resolve(dispute.id, self.admin_user, "Job not done", DisputeOutcome.REFUND)

        self.assertEqual(self.reload(dispute).status, DisputeStatus.PENDING)
        booking = self.reload(booking)
        self.assertEqual(booking.status, BookingStatus.DISPUTED)
        self.assertEqual(booking.payment.status, PaymentStatus.PROCESSING_RELEASE)
        self.assertEqual(self.gateway.calls_to("refund"), [])

    def test_refund_refused_when_failed_transfer_actually_landed(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        self.gateway.transfer_outcomes = ["error"]
        payout = payouts.dispatch(booking.payment.id)
        self.gateway.transfer_statuses[payout.reference] = "success"
        dispute = disputes.raise_dispute(booking.id, self.client_user, "Wait")

        with self.assertRaises(PreconditionError):
            disputes.resolve(dispute.id, self.admin_user, "Job not done", DisputeOutcome.REFUND)

        self.assertEqual(self.reload(dispute).status, DisputeStatus.PENDING)
        self.assertEqual(self.reload(payout).status, PayoutStatus.FAILED)
        self.assertEqual(self.gateway.calls_to("refund"), [])
