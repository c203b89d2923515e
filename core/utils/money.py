# core/utils/money.py


from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings

from core.exceptions import ConsistencyError, ValidationError

ZERO_DECIMAL_CURRENCIES = {
    "BIF","CLP","DJF","GNF","JPY","KMF","KRW","MGA","PYG","RWF","UGX","VND","VUV","XAF","XOF","XPF",
}

CENT = Decimal("0.01")


def currency_exponent(currency: str) -> int:
    c = (currency or "ZAR").upper().strip()
    return 0 if c in ZERO_DECIMAL_CURRENCIES else 2


def quantize_money(amount, currency: str = "ZAR") -> Decimal:
    exp = currency_exponent(currency)
    q = Decimal("1") if exp == 0 else CENT
    return Decimal(str(amount)).quantize(q, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Paystack expects integer minor units (kobo, pesewas, cents).
    For 0-decimal currencies, minor units == major units.
    """
    c = (currency or "ZAR").upper().strip()
    amt = quantize_money(amount, c)
    if currency_exponent(c) == 0:
        return int(amt)
    return int((amt * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    c = (currency or "ZAR").upper().strip()
    if currency_exponent(c) == 0:
        return Decimal(str(int(amount_minor))).quantize(Decimal("1"))
    return (Decimal(str(int(amount_minor))) / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)


def platform_fee_percent() -> Decimal:
    percent = Decimal(str(getattr(settings, "PLATFORM_FEE_PERCENT", "10")))
    if percent < 0 or percent >= 100:
        raise ValidationError(f"Platform fee percent must be in [0, 100), got {percent}.")
    return percent


def fee_breakdown(amount, percent: Decimal | None = None) -> tuple[Decimal, Decimal, Decimal]:
    """
    Split a client payment into (amount, platform_fee, escrow_amount).

    The fee is rounded half-up to cents first; the escrow share is whatever
    remains, so the two always add back up to the amount.
    """
    amount = quantize_money(amount)
    if amount <= 0:
        raise ValidationError("Amount must be positive.")

    percent = platform_fee_percent() if percent is None else Decimal(str(percent))
    if percent < 0 or percent >= 100:
        raise ValidationError(f"Platform fee percent must be in [0, 100), got {percent}.")

    platform_fee = (amount * percent / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    escrow_amount = amount - platform_fee

    if escrow_amount + platform_fee != amount or escrow_amount < 0:
        raise ConsistencyError(
            f"Fee breakdown does not add up: {escrow_amount} + {platform_fee} != {amount}",
            amount=amount,
        )
    return amount, platform_fee, escrow_amount
