# app/x402/exceptions.py
"""Errors raised while gating a request on payment."""
from typing import Optional


class PaymentGateError(Exception):
    """Base class for payment gate errors."""


class DecodeError(PaymentGateError):
    """The payment header is not base64, not JSON, or not a payment payload."""


class VerificationRejected(PaymentGateError):
    """The facilitator judged the payment invalid."""

    def __init__(self, reason: Optional[str] = None, payer: Optional[str] = None):
        super().__init__(reason or "Invalid Payment")
        self.reason = reason
        self.payer = payer


class TransportError(PaymentGateError):
    """The facilitator could not be reached or returned an unusable answer."""


class SettlementFailure(PaymentGateError):
    """The facilitator reported that settlement did not go through."""

    def __init__(self, reason: Optional[str] = None, network: str = "", payer: Optional[str] = None):
        super().__init__(reason or "settlement failed")
        self.reason = reason
        self.network = network
        self.payer = payer


class ClientDisconnected(TransportError):
    """The client closed the connection before a verdict was obtained."""
