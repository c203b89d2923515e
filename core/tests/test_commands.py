from datetime import timedelta
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.utils import timezone

from core import tasks
from core.models import JobProof, Payout, PayoutStatus
from core.services import escrow, payouts
from core.tests.helpers import EscrowTestCase


class AutoConfirmCommandTests(EscrowTestCase):

    def overdue(self):
        booking, proof = self.make_awaiting()
        JobProof.objects.filter(pk=proof.pk).update(
            completed_at=timezone.now() - timedelta(hours=73),
            auto_confirm_at=timezone.now() - timedelta(hours=1),
        )
        return booking, proof

    def test_dry_run_changes_nothing(self):
        booking, proof = self.overdue()
        out = StringIO()

        call_command("auto_confirm_jobs", "--dry-run", stdout=out)

        self.assertIn(f"Booking #{booking.id}", out.getvalue())
        self.assertIsNone(self.reload(proof).client_confirmed)
        self.assertFalse(Payout.objects.exists())

    def test_confirms_overdue_jobs(self):
        booking, proof = self.overdue()
        out = StringIO()

        call_command("auto_confirm_jobs", stdout=out)

        self.assertIn("confirmed=1", out.getvalue())
        self.assertEqual(self.reload(proof).confirmed_by, "system")

    def test_sweep_task_reports_ids(self):
        booking, _ = self.overdue()
        self.assertEqual(tasks.auto_confirm_sweep_task(), {"confirmed": 1, "booking_ids": [booking.id]})


class RetryPayoutsCommandTests(EscrowTestCase):

    def failed_payout(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        self.gateway.transfer_outcomes = ["error"]
        return payouts.dispatch(booking.payment.id)

    def test_retries_failed_payouts(self):
        payout = self.failed_payout()
        out = StringIO()

        call_command("retry_failed_payouts", stdout=out, stderr=StringIO())

        self.assertIn("sent=1", out.getvalue())
        payout.refresh_from_db()
        self.assertEqual(payout.status, PayoutStatus.COMPLETED)

    def test_exhausted_payouts_need_flag(self):
        payout = self.failed_payout()
        Payout.objects.filter(pk=payout.pk).update(attempts=3)

        call_command("retry_failed_payouts", stdout=StringIO(), stderr=StringIO())
        self.assertEqual(Payout.objects.get(pk=payout.pk).status, PayoutStatus.FAILED)

        call_command("retry_failed_payouts", "--include-exhausted", stdout=StringIO(), stderr=StringIO())
        self.assertEqual(Payout.objects.get(pk=payout.pk).status, PayoutStatus.COMPLETED)

    def test_still_failing_is_reported(self):
        payout = self.failed_payout()
        self.gateway.transfer_outcomes = ["error"]
        out, err = StringIO(), StringIO()

        call_command("retry_failed_payouts", "--payout-id", str(payout.id), stdout=out, stderr=err)

        self.assertIn("failed=1", out.getvalue())
        self.assertIn(payout.reference, err.getvalue())


class PayoutTaskTests(EscrowTestCase):

    def test_dispatch_task_schedules_retry_on_failure(self):
        booking, _ = self.make_awaiting()
        escrow.initiate_release(booking.payment.id)
        self.gateway.transfer_outcomes = ["error"]

        with mock.patch("core.tasks.retry_payout.apply_async") as apply_async:
            result = tasks.dispatch_payout(booking.payment.id)

        self.assertFalse(result["success"])
        apply_async.assert_called_once()

    def test_dispatch_task_swallows_state_errors(self):
        booking = self.make_paid()
        result = tasks.dispatch_payout(booking.payment.id)
        self.assertFalse(result["success"])

    def test_safety_net_requeues_stale_payouts(self):
        booking, _ = self.make_awaiting()
        payout = escrow.initiate_release(booking.payment.id)
        Payout.objects.filter(pk=payout.pk).update(updated_at=timezone.now() - timedelta(hours=2))

        with mock.patch("core.tasks.dispatch_payout.delay") as delay, \
                mock.patch("core.tasks.retry_payout.delay") as retry_delay:
            result = tasks.retry_failed_payouts_task()

        self.assertEqual(result, {"retried": 0, "redispatched": 1, "reconciled": 0})
        delay.assert_called_once_with(booking.payment.id)
        retry_delay.assert_not_called()
