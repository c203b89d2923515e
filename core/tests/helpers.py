# core/tests/helpers.py

from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.test import TestCase
from django.utils import timezone

from core.models import Booking, CustomUser, Service, ServiceProvider
from core.services import bookings, escrow, job_proofs


class FakeGateway:
    """
    In-memory stand-in for PaystackGateway. Returns the same result dicts as
    the real client and records every call.
    """

    def __init__(self):
        self.calls = []
        self.charge_success = True
        self.refund_success = True
        # Consumed one per create_transfer call: "success", "pending", "failed" or "error"
        self.transfer_outcomes = []
        # reference -> status Paystack would report on verify_transfer
        self.transfer_statuses = {}
        # reference -> result dict returned by verify
        self.verify_results = {}

    def calls_to(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def initialize(self, **kwargs):
        self.calls.append(("initialize", kwargs))
        return {
            "success": True,
            "authorization_url": f"https://checkout.paystack.com/{kwargs['reference']}",
            "access_code": "acc_test",
            "reference": kwargs["reference"],
            "message": "Authorization URL created",
            "raw": {},
        }

    def verify(self, reference):
        self.calls.append(("verify", {"reference": reference}))
        return self.verify_results.get(reference, {"success": False, "status": "abandoned", "message": ""})

    def charge(self, **kwargs):
        self.calls.append(("charge", kwargs))
        if not self.charge_success:
            return {
                "success": False,
                "status": "failed",
                "amount": Decimal("0.00"),
                "reference": kwargs["reference"],
                "message": "Declined",
            }
        return {
            "success": True,
            "status": "success",
            "amount": kwargs["amount"],
            "currency": kwargs["currency"],
            "reference": kwargs["reference"],
            "paid_at": None,
            "message": "Approved",
        }

    def refund(self, **kwargs):
        self.calls.append(("refund", kwargs))
        if not self.refund_success:
            return {"success": False, "refund_id": None, "status": "failed", "message": "Refund failed"}
        return {"success": True, "refund_id": 4242, "status": "pending", "amount": kwargs.get("amount")}

    def create_transfer_recipient(self, **kwargs):
        self.calls.append(("create_transfer_recipient", kwargs))
        return {"success": True, "recipient_code": "RCP_test123", "message": "Recipient created"}

    def create_transfer(self, **kwargs):
        self.calls.append(("create_transfer", kwargs))
        outcome = self.transfer_outcomes.pop(0) if self.transfer_outcomes else "success"
        if outcome == "error":
            return {"success": False, "status": "failed", "transfer_code": None, "message": "Insufficient balance"}
        self.transfer_statuses[kwargs["reference"]] = outcome
        return {
            "success": True,
            "status": outcome,
            "transfer_code": f"TRF_{len(self.calls_to('create_transfer'))}",
            "reference": kwargs["reference"],
            "message": "Transfer has been queued",
        }

    def verify_transfer(self, reference):
        self.calls.append(("verify_transfer", {"reference": reference}))
        if reference in self.transfer_statuses:
            return {"success": True, "status": self.transfer_statuses[reference], "transfer_code": "TRF_prev"}
        return {"success": False, "status": "unknown", "transfer_code": None, "message": "Transfer not found"}


class EscrowTestCase(TestCase):
    """
    Base class with a client, a provider ready to be paid, an admin and a
    service priced at 1000.00. The Paystack gateway is replaced by a
    FakeGateway for every code path, including Celery tasks.
    """

    AUTH = {"authorization_code": "AUTH_test"}

    def setUp(self):
        self.gateway = FakeGateway()
        patcher = mock.patch("core.services.paystack.get_gateway", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.client_user = CustomUser.objects.create_user(
            username="thandi", email="thandi@example.com", password="pass12345", role="client",
        )
        self.provider_user = CustomUser.objects.create_user(
            username="sipho", email="sipho@example.com", password="pass12345", role="provider",
            first_name="Sipho", last_name="Dlamini",
        )
        self.admin_user = CustomUser.objects.create_user(
            username="ops", email="ops@example.com", password="pass12345", role="admin", is_staff=True,
        )
        self.stranger = CustomUser.objects.create_user(
            username="stranger", email="stranger@example.com", password="pass12345", role="client",
        )

        # The profile is created by the post_save signal
        self.provider = ServiceProvider.objects.get(user=self.provider_user)
        self.provider.available = True
        self.provider.bank_code = "632005"
        self.provider.account_number = "0123456789"
        self.provider.payout_currency = "ZAR"
        self.provider.save()

        self.service = Service.objects.create(name="Deep clean", category="cleaning", base_price=Decimal("1000.00"))

    # --- walking a booking through its lifecycle ---

    def schedule(self, **overrides):
        schedule = {
            "scheduled_date": timezone.now() + timedelta(days=2),
            "duration": 120,
            "address": "12 Long Street, Cape Town",
        }
        schedule.update(overrides)
        return schedule

    def make_booking(self, **overrides) -> Booking:
        return bookings.create_booking(self.client_user, self.provider, self.service, self.schedule(**overrides))

    def make_confirmed(self) -> Booking:
        booking = self.make_booking()
        bookings.accept_booking(booking.id, self.provider.id)
        return self.reload(booking)

    def make_paid(self) -> Booking:
        booking = self.make_confirmed()
        escrow.charge(booking, self.AUTH)
        return self.reload(booking)

    def make_in_progress(self) -> Booking:
        booking = self.make_paid()
        bookings.start_job(booking.id, self.provider.id)
        return self.reload(booking)

    def make_awaiting(self):
        booking = self.make_in_progress()
        proof = job_proofs.submit_proof(booking.id, self.provider.id, {"photos": ["https://cdn.example.com/after.jpg"]})
        return self.reload(booking), proof

    def reload(self, obj):
        obj.refresh_from_db()
        return obj
