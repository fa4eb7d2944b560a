# payouts/services/gateway.py

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import stripe

logger = logging.getLogger(__name__)

STATUS_PAID = "paid"


class PaymentGatewayError(Exception):
    """Base class for payout rail errors"""
    pass


class TerminalGatewayError(PaymentGatewayError):
    """Retrying cannot help: bad destination, bad credentials, rejected request."""
    pass


class TransientGatewayError(PaymentGatewayError):
    """Network, rate-limit or provider-side failure; safe to retry with the same key."""
    pass


class TransferNotCompleted(TransientGatewayError):
    """The gateway answered, but not with a definitive paid status."""

    def __init__(self, response: "TransferResponse"):
        super().__init__(f"Transfer not completed or pending: {response.status} ({response.transfer_id})")
        self.response = response


@dataclass(frozen=True)
class TransferRequest:
    amount_minor_units: int
    currency: str
    destination_account: str
    idempotency_key: str
    description: str


@dataclass(frozen=True)
class TransferResponse:
    transfer_id: str
    status: str

    @property
    def is_paid(self) -> bool:
        return self.status == STATUS_PAID


class PaymentGateway:
    """
    Payout rail contract. Implementations must treat idempotency_key as the
    identity of the transfer: repeating a request with the same key returns
    the original transfer instead of moving money twice.
    """

    def create_transfer(self, request: TransferRequest) -> TransferResponse:
        raise NotImplementedError


_CLOSED_ACCOUNT = re.compile(r"account.*closed", re.IGNORECASE)
_TERMINAL_CODES = {"account_invalid", "account_closed", "invalid_account", "idempotency_key_in_use"}


def classify_stripe_error(err: Exception) -> PaymentGatewayError:
    """Map a stripe exception to terminal or transient."""
    message = str(getattr(err, "user_message", None) or err)
    code = getattr(err, "code", None) or ""

    if isinstance(err, (stripe.AuthenticationError, stripe.PermissionError, stripe.InvalidRequestError, stripe.IdempotencyError)):
        return TerminalGatewayError(message)
    if code in _TERMINAL_CODES or _CLOSED_ACCOUNT.search(message):
        return TerminalGatewayError(message)
    return TransientGatewayError(message)


class StripeGateway(PaymentGateway):
    """Stripe Connect transfers to the driver's connected account."""

    def __init__(self, api_key: str, timeout: int = 30):
        self.api_key = api_key
        # retries are driven by the transfer worker's policy, not the SDK
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def create_transfer(self, request: TransferRequest) -> TransferResponse:
        if not self.api_key:
            raise TerminalGatewayError("STRIPE_SECRET_KEY is not configured")
        if request.amount_minor_units <= 0:
            raise TerminalGatewayError("Transfer amount must be > 0")

        try:
            tr = stripe.Transfer.create(
                amount=request.amount_minor_units,
                currency=request.currency.lower(),
                destination=request.destination_account,
                description=request.description,
                idempotency_key=request.idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise classify_stripe_error(e) from e

        if not tr:
            raise TransientGatewayError("Stripe returned no transfer")

        # Transfers carry no status field; a created, non-reversed transfer has settled.
        status = tr.get("status") or ("reversed" if tr.get("reversed") else STATUS_PAID)
        return TransferResponse(transfer_id=tr["id"], status=status)
