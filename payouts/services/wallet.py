# payouts/services/wallet.py

"""
Wallet ledger: the only code allowed to move money between a driver's
pending and available balances.

Every mutation is a single conditional UPDATE with F() expressions, so it is
atomic on its own and composes with whatever transaction.atomic() block the
caller has open. There is no extra locking: a driver is only ever handled by
one in-flight transfer attempt at a time.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from django.db.models import F
from django.utils import timezone

from payouts.models import DriverWallet
from payouts.utils.money import q


class WalletError(Exception):
    """Base class for ledger errors"""
    pass


class WalletNotFound(WalletError):
    pass


class InsufficientPendingBalance(WalletError):
    pass


def _positive(amount) -> Decimal:
    amt = q(amount)
    if amt <= Decimal("0.00"):
        raise ValueError(f"Ledger amount must be > 0 (got {amt})")
    return amt


def get_driver_balance(driver_id) -> Optional[DriverWallet]:
    return DriverWallet.objects.filter(driver_id=driver_id).first()


def reserve_pending(driver_id, amount) -> Decimal:
    """
    Take `amount` out of pending_balance (the transfer reservation).
    Never lets pending_balance go below zero.
    """
    amt = _positive(amount)
    updated = DriverWallet.objects.filter(
        driver_id=driver_id,
        pending_balance__gte=amt,
    ).update(pending_balance=F("pending_balance") - amt, updated_at=timezone.now())

    if updated == 0:
        if not DriverWallet.objects.filter(driver_id=driver_id).exists():
            raise WalletNotFound(f"No wallet for driver {driver_id}")
        raise InsufficientPendingBalance(f"Pending balance of driver {driver_id} is below {amt}")
    return amt


def credit_available(driver_id, amount) -> Decimal:
    amt = _positive(amount)
    updated = DriverWallet.objects.filter(driver_id=driver_id).update(
        available_balance=F("available_balance") + amt,
        updated_at=timezone.now(),
    )
    if updated == 0:
        raise WalletNotFound(f"No wallet for driver {driver_id}")
    return amt


def release_pending(driver_id, amount) -> Decimal:
    """
    Give a reservation back to pending_balance (compensating entry). The
    transfer worker uses it when a transfer fails after its reservation
    committed.
    """
    amt = _positive(amount)
    updated = DriverWallet.objects.filter(driver_id=driver_id).update(
        pending_balance=F("pending_balance") + amt,
        updated_at=timezone.now(),
    )
    if updated == 0:
        raise WalletNotFound(f"No wallet for driver {driver_id}")
    return amt
