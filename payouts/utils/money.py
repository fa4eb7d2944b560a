# payouts/utils/money.py


from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

ZERO_DECIMAL_CURRENCIES = {
    "BIF","CLP","DJF","GNF","JPY","KMF","KRW","MGA","PYG","RWF","UGX","VND","VUV","XAF","XOF","XPF",
}

CENTS = Decimal("0.01")


def currency_exponent(currency: str) -> int:
    c = (currency or "CAD").upper().strip()
    return 0 if c in ZERO_DECIMAL_CURRENCIES else 2


def q(amount) -> Decimal:
    """Quantize any amount (Decimal, str, int, float) to cents."""
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def transferable(amount, currency: str) -> Decimal:
    """
    Largest part of `amount` the currency can actually carry, in cents.
    10.50 JPY -> 10.00; the remainder stays in the wallet.
    """
    unit = Decimal("1") if currency_exponent(currency) == 0 else CENTS
    return q(Decimal(str(amount)).quantize(unit, rounding=ROUND_DOWN))


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Gateways expect integer minor units.
    For 0-decimal currencies, minor units == major units.

    Rounds down: the transfer must never exceed the reserved pending balance.
    """
    amt = Decimal(str(amount))
    if currency_exponent(currency) == 0:
        return int(amt.quantize(Decimal("1"), rounding=ROUND_DOWN))
    return int((amt * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_DOWN))
