# core/services/paystack.py

"""
Paystack payment and transfer API client.

Module-level functions wrap single Paystack endpoints and always return a
result dict with a ``success`` flag instead of raising; ``PaystackGateway``
is the object the escrow services are given, so tests can swap in a fake.
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
import requests
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

from django.conf import settings
from django.utils import timezone

from core.utils.money import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


class PaystackError(Exception):
    """Custom exception for Paystack errors"""
    pass


def _paystack_base_url() -> str:
    """Paystack API base URL"""
    return "https://api.paystack.co"


def _paystack_auth_headers() -> Dict[str, str]:
    """Get authorization headers for Paystack API"""
    secret_key = getattr(settings, "PAYSTACK_SECRET_KEY", "")
    return {
        "Authorization": f"Bearer {secret_key}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _timeout() -> int:
    return int(getattr(settings, "PAYSTACK_TIMEOUT_SECONDS", 30))


def generate_reference(prefix: str = "SH") -> str:
    """Generate unique transaction reference"""
    timestamp = int(timezone.now().timestamp())
    unique_id = uuid.uuid4().hex[:12]
    return f"{prefix}_{timestamp}_{unique_id}".upper()


# =============================================================================
# PAYMENT INITIALIZATION, CHARGE & VERIFICATION
# =============================================================================

def initialize_transaction(
    email: str,
    amount: Decimal,
    currency: str,
    reference: str,
    callback_url: str | None = None,
    metadata: Dict[str, Any] | None = None,
    channels: List[str] | None = None,
) -> Dict[str, Any]:
    """
    Initialize a Paystack transaction (hosted checkout).

    Returns:
        {
            'success': bool,
            'authorization_url': str,  # URL to redirect user for payment
            'access_code': str,
            'reference': str,
            'message': str,
            'raw': dict
        }
    """
    url = f"{_paystack_base_url()}/transaction/initialize"

    payload = {
        "email": email,
        "amount": to_minor_units(amount, currency),
        "currency": currency.upper(),
        "reference": reference,
    }

    if callback_url:
        payload["callback_url"] = callback_url

    if metadata:
        payload["metadata"] = metadata

    if channels:
        payload["channels"] = channels

    try:
        response = requests.post(
            url,
            headers=_paystack_auth_headers(),
            json=payload,
            timeout=_timeout(),
        )
        data = response.json() if response.content else {}

        if response.status_code == 200 and data.get("status") is True:
            tx_data = data.get("data", {})
            return {
                "success": True,
                "authorization_url": tx_data.get("authorization_url"),
                "access_code": tx_data.get("access_code"),
                "reference": tx_data.get("reference") or reference,
                "message": data.get("message", "Transaction initialized"),
                "raw": data,
            }

        error_msg = data.get("message") or str(data)
        logger.error(f"Paystack initialize failed for {reference}: {error_msg}")
        return {
            "success": False,
            "authorization_url": None,
            "access_code": None,
            "reference": reference,
            "message": error_msg,
            "raw": data,
        }

    except requests.exceptions.Timeout:
        logger.error(f"Paystack initialize timeout for {reference}")
        return {
            "success": False,
            "authorization_url": None,
            "access_code": None,
            "reference": reference,
            "message": "Request timed out",
            "raw": {},
        }
    except requests.exceptions.RequestException as e:
        logger.error(f"Paystack initialize error for {reference}: {e}")
        return {
            "success": False,
            "authorization_url": None,
            "access_code": None,
            "reference": reference,
            "message": str(e),
            "raw": {},
        }


def _transaction_result(data: Dict[str, Any], reference: str) -> Dict[str, Any]:
    tx_data = data.get("data") or {}
    tx_status = (tx_data.get("status") or "").lower()
    currency = (tx_data.get("currency") or getattr(settings, "DEFAULT_CURRENCY", "ZAR")).upper()
    return {
        "success": tx_status == "success",
        "status": tx_status,
        "amount": from_minor_units(int(tx_data.get("amount") or 0), currency),
        "currency": currency,
        "reference": tx_data.get("reference") or reference,
        "transaction_id": tx_data.get("id"),
        "paid_at": tx_data.get("paid_at") or tx_data.get("paidAt"),
        "channel": tx_data.get("channel"),
        "message": tx_data.get("gateway_response") or data.get("message", ""),
        "raw": data,
    }


def _failed_transaction(reference: str, status: str, message: str, raw=None) -> Dict[str, Any]:
    return {
        "success": False,
        "status": status,
        "amount": Decimal("0.00"),
        "currency": "",
        "reference": reference,
        "transaction_id": None,
        "paid_at": None,
        "channel": None,
        "message": message,
        "raw": raw or {},
    }


def charge_authorization(
    email: str,
    amount: Decimal,
    currency: str,
    authorization_code: str,
    reference: str,
    metadata: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """
    Charge a previously saved card authorization.

    Paystack treats ``reference`` as unique, so replaying the same call after
    a timeout cannot capture twice.
    """
    url = f"{_paystack_base_url()}/transaction/charge_authorization"

    payload = {
        "email": email,
        "amount": to_minor_units(amount, currency),
        "currency": currency.upper(),
        "authorization_code": authorization_code,
        "reference": reference,
    }
    if metadata:
        payload["metadata"] = metadata

    try:
        response = requests.post(
            url,
            headers=_paystack_auth_headers(),
            json=payload,
            timeout=_timeout(),
        )
        data = response.json() if response.content else {}

        logger.info(f"Paystack charge_authorization response for {reference}: status={response.status_code}")

        if response.status_code == 200 and data.get("status") is True:
            return _transaction_result(data, reference)
        return _failed_transaction(reference, "failed", data.get("message") or "Charge failed", data)

    except requests.exceptions.RequestException as e:
        logger.error(f"Paystack charge error for {reference}: {e}")
        return _failed_transaction(reference, "error", str(e))


def verify_transaction(reference: str) -> Dict[str, Any]:
    """
    Verify a Paystack transaction by reference.

    Returns:
        {
            'success': bool,
            'status': str,  # 'success', 'failed', 'abandoned', etc.
            'amount': Decimal,  # Amount in main currency
            'currency': str,
            'reference': str,
            'transaction_id': int,
            'paid_at': str,
            'channel': str,
            'message': str,
            'raw': dict
        }
    """
    url = f"{_paystack_base_url()}/transaction/verify/{reference}"

    try:
        response = requests.get(
            url,
            headers=_paystack_auth_headers(),
            timeout=_timeout(),
        )
        data = response.json() if response.content else {}

        logger.info(f"Paystack verify response for {reference}: status={response.status_code}")

        if response.status_code == 200 and data.get("status") is True:
            return _transaction_result(data, reference)
        return _failed_transaction(reference, "failed", data.get("message") or "Verification failed", data)

    except requests.exceptions.RequestException as e:
        logger.error(f"Paystack verify error for {reference}: {e}")
        return _failed_transaction(reference, "error", str(e))


# =============================================================================
# REFUNDS
# =============================================================================

def create_refund(
    transaction_reference: str,
    amount: Decimal | None = None,
    currency: str = "ZAR",
    reason: str = "Customer requested refund",
) -> Dict[str, Any]:
    """
    Create a refund for a Paystack transaction.

    Args:
        transaction_reference: Original transaction reference
        amount: Amount to refund (None for full refund)
        currency: Currency for amount conversion
        reason: Reason for refund
    """
    url = f"{_paystack_base_url()}/refund"

    payload = {
        "transaction": transaction_reference,
        "merchant_note": reason,
    }

    if amount is not None:
        payload["amount"] = to_minor_units(amount, currency)

    try:
        response = requests.post(
            url,
            headers=_paystack_auth_headers(),
            json=payload,
            timeout=_timeout(),
        )
        data = response.json() if response.content else {}

        if response.status_code == 200 and data.get("status") is True:
            refund_data = data.get("data", {})
            refund_amount = int(refund_data.get("amount") or 0)
            return {
                "success": True,
                "refund_id": refund_data.get("id"),
                "status": refund_data.get("status"),
                "amount": from_minor_units(refund_amount, currency),
                "message": data.get("message", "Refund initiated"),
                "raw": data,
            }
        return {
            "success": False,
            "refund_id": None,
            "status": "failed",
            "amount": Decimal("0.00"),
            "message": data.get("message") or "Refund failed",
            "raw": data,
        }

    except requests.exceptions.RequestException as e:
        logger.error(f"Paystack refund error for {transaction_reference}: {e}")
        return {
            "success": False,
            "refund_id": None,
            "status": "error",
            "amount": Decimal("0.00"),
            "message": str(e),
            "raw": {},
        }


# =============================================================================
# TRANSFERS (PAYOUTS)
# =============================================================================

def create_transfer_recipient(
    name: str,
    account_number: str,
    bank_code: str,
    currency: str = "ZAR",
    recipient_type: str | None = None,
    metadata: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """
    Create a transfer recipient for payouts.

    Returns:
        {
            'success': bool,
            'recipient_code': str,  # Use this for transfers
            'recipient_id': int,
            'name': str,
            'message': str,
            'raw': dict
        }
    """
    url = f"{_paystack_base_url()}/transferrecipient"

    # Nigeria: nuban, Ghana: ghipss, South Africa: basa, Kenya/XOF: mobile_money
    type_map = {
        "NGN": "nuban",
        "GHS": "ghipss",
        "ZAR": "basa",
        "KES": "mobile_money",
        "XOF": "mobile_money",
    }

    if not recipient_type:
        recipient_type = type_map.get(currency.upper(), "nuban")

    payload = {
        "type": recipient_type,
        "name": name,
        "account_number": account_number,
        "bank_code": bank_code,
        "currency": currency.upper(),
    }

    if metadata:
        payload["metadata"] = metadata

    try:
        response = requests.post(
            url,
            headers=_paystack_auth_headers(),
            json=payload,
            timeout=_timeout(),
        )
        data = response.json() if response.content else {}

        if response.status_code in (200, 201) and data.get("status") is True:
            recipient_data = data.get("data", {})
            return {
                "success": True,
                "recipient_code": recipient_data.get("recipient_code"),
                "recipient_id": recipient_data.get("id"),
                "name": recipient_data.get("name") or name,
                "message": data.get("message", "Recipient created"),
                "raw": data,
            }
        return {
            "success": False,
            "recipient_code": None,
            "recipient_id": None,
            "name": name,
            "message": data.get("message") or "Failed to create recipient",
            "raw": data,
        }

    except requests.exceptions.RequestException as e:
        logger.error(f"Paystack create recipient error: {e}")
        return {
            "success": False,
            "recipient_code": None,
            "recipient_id": None,
            "name": name,
            "message": str(e),
            "raw": {},
        }


def initiate_transfer(
    amount: Decimal,
    recipient_code: str,
    reference: str,
    currency: str = "ZAR",
    reason: str = "Payout",
) -> Dict[str, Any]:
    """
    Initiate a transfer to a recipient.

    ``reference`` is required: Paystack rejects a second transfer with the same
    reference, which is what keeps payout retries from paying twice.

    Returns:
        {
            'success': bool,
            'transfer_code': str,
            'transfer_id': int,
            'reference': str,
            'status': str,  # 'pending', 'success', 'otp', 'failed', ...
            'message': str,
            'raw': dict
        }
    """
    url = f"{_paystack_base_url()}/transfer"

    payload = {
        "source": "balance",
        "amount": to_minor_units(amount, currency),
        "recipient": recipient_code,
        "reason": reason,
        "reference": reference,
        "currency": currency.upper(),
    }

    try:
        response = requests.post(
            url,
            headers=_paystack_auth_headers(),
            json=payload,
            timeout=_timeout(),
        )
        data = response.json() if response.content else {}

        logger.info(f"Paystack transfer response for {reference}: status={response.status_code}")

        if response.status_code == 200 and data.get("status") is True:
            transfer_data = data.get("data", {})
            return {
                "success": True,
                "transfer_code": transfer_data.get("transfer_code"),
                "transfer_id": transfer_data.get("id"),
                "reference": transfer_data.get("reference") or reference,
                "status": (transfer_data.get("status") or "pending").lower(),
                "message": data.get("message", "Transfer initiated"),
                "raw": data,
            }
        return {
            "success": False,
            "transfer_code": None,
            "transfer_id": None,
            "reference": reference,
            "status": "failed",
            "message": data.get("message") or "Transfer failed",
            "raw": data,
        }

    except requests.exceptions.RequestException as e:
        logger.error(f"Paystack transfer error for {reference}: {e}")
        return {
            "success": False,
            "transfer_code": None,
            "transfer_id": None,
            "reference": reference,
            "status": "error",
            "message": str(e),
            "raw": {},
        }


def verify_transfer(reference: str) -> Dict[str, Any]:
    """
    Check the status of a transfer by its reference.
    """
    url = f"{_paystack_base_url()}/transfer/verify/{reference}"

    try:
        response = requests.get(
            url,
            headers=_paystack_auth_headers(),
            timeout=_timeout(),
        )
        data = response.json() if response.content else {}

        if response.status_code == 200 and data.get("status") is True:
            transfer_data = data.get("data", {})
            currency = transfer_data.get("currency") or getattr(settings, "DEFAULT_CURRENCY", "ZAR")
            return {
                "success": True,
                "status": (transfer_data.get("status") or "").lower(),
                "transfer_code": transfer_data.get("transfer_code"),
                "amount": from_minor_units(int(transfer_data.get("amount") or 0), currency),
                "message": data.get("message", ""),
                "raw": data,
            }
        return {
            "success": False,
            "status": "unknown",
            "transfer_code": None,
            "amount": Decimal("0.00"),
            "message": data.get("message") or "Transfer not found",
            "raw": data,
        }

    except requests.exceptions.RequestException as e:
        logger.error(f"Paystack verify transfer error for {reference}: {e}")
        return {
            "success": False,
            "status": "error",
            "transfer_code": None,
            "amount": Decimal("0.00"),
            "message": str(e),
            "raw": {},
        }


# =============================================================================
# WEBHOOK VERIFICATION
# =============================================================================

def verify_webhook_signature(payload: bytes, signature: str) -> bool:
    """
    Verify Paystack webhook signature.

    Args:
        payload: Raw request body (bytes)
        signature: Value of 'x-paystack-signature' header
    """
    secret_key = getattr(settings, "PAYSTACK_SECRET_KEY", "")
    if not secret_key or not signature:
        return False

    computed = hmac.new(
        secret_key.encode("utf-8"),
        payload,
        hashlib.sha512
    ).hexdigest()

    return hmac.compare_digest(computed, signature)


# =============================================================================
# GATEWAY FACADE
# =============================================================================

class PaystackGateway:
    """
    The payment-gateway collaborator used by the escrow services.

    Exposes the four operations the services need; each returns the same
    result dicts as the module functions above.
    """

    def initialize(self, *, email, amount, currency, reference, callback_url=None, metadata=None):
        return initialize_transaction(
            email=email,
            amount=amount,
            currency=currency,
            reference=reference,
            callback_url=callback_url,
            metadata=metadata,
        )

    def verify(self, reference: str):
        return verify_transaction(reference)

    def charge(self, *, email, amount, currency, authorization_code, reference, metadata=None):
        return charge_authorization(
            email=email,
            amount=amount,
            currency=currency,
            authorization_code=authorization_code,
            reference=reference,
            metadata=metadata,
        )

    def refund(self, *, reference, amount=None, currency="ZAR", reason="Booking refund"):
        return create_refund(
            transaction_reference=reference,
            amount=amount,
            currency=currency,
            reason=reason,
        )

    def create_transfer_recipient(self, *, name, account_number, bank_code, currency, metadata=None):
        return create_transfer_recipient(
            name=name,
            account_number=account_number,
            bank_code=bank_code,
            currency=currency,
            metadata=metadata,
        )

    def create_transfer(self, *, amount, recipient_code, reference, currency, reason="Payout"):
        return initiate_transfer(
            amount=amount,
            recipient_code=recipient_code,
            reference=reference,
            currency=currency,
            reason=reason,
        )

    def verify_transfer(self, reference: str):
        return verify_transfer(reference)


def get_gateway() -> PaystackGateway:
    return PaystackGateway()
