# app/x402/models.py
"""
Wire models for the x402 payment protocol.

Attributes are snake_case; the JSON field names on the wire are camelCase
and are part of the protocol contract. Always serialize with by_alias=True.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

X402_VERSION = 1


class X402Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Dump with wire field names, leaving out unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentRequirements(X402Model):
    """What a resource demands before it is served."""
    scheme: str = "exact"
    network: str
    max_amount_required: str = Field(..., description="Amount in atomic units, as a decimal string.")
    resource: str
    description: str
    mime_type: str
    pay_to: str
    max_timeout_seconds: int
    asset: str
    output_schema: Optional[Dict[str, Any]] = None
    extra: Optional[Dict[str, Any]] = None


class ExactPaymentAuthorization(X402Model):
    """ERC-3009 TransferWithAuthorization message."""
    from_: str = Field(..., alias="from")
    to: str
    value: str
    valid_after: str
    valid_before: str
    nonce: str


class ExactPaymentBody(X402Model):
    signature: str = Field(..., min_length=1)
    authorization: ExactPaymentAuthorization


class PaymentPayload(X402Model):
    """Client-supplied claim of payment carried in the payment header."""
    x402_version: int
    scheme: str
    network: str
    payload: ExactPaymentBody


class VerifyResponse(X402Model):
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None


class SettleResponse(X402Model):
    success: bool
    error_reason: Optional[str] = None
    transaction: str = ""
    network: str = ""
    payer: Optional[str] = None


class FacilitatorRequest(X402Model):
    """Body of both the verify and the settle call."""
    x402_version: int = X402_VERSION
    payment_payload: PaymentPayload
    payment_requirements: PaymentRequirements


class PaymentRequiredResponse(X402Model):
    """Body of the 402 challenge."""
    x402_version: int = X402_VERSION
    accepts: List[PaymentRequirements]
