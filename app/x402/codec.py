# app/x402/codec.py
"""
Encoding and decoding of x402 payment data.

The payment header carries base64(JSON(PaymentPayload)). Requirements go
out as plain JSON inside the 402 body and the facilitator requests.
"""
import base64
import binascii
import json
import logging
from typing import Any, Dict

from pydantic import ValidationError

from app.x402.exceptions import DecodeError
from app.x402.models import PaymentPayload, PaymentRequiredResponse, PaymentRequirements

logger = logging.getLogger(__name__)


def decode_payment_header(header_value: str) -> PaymentPayload:
    """
    Decode a payment header into a PaymentPayload.

    Args:
        header_value: Base64-encoded JSON payment payload

    Returns:
        The validated PaymentPayload

    Raises:
        DecodeError: If the value is not base64, not JSON, or does not match
            the payment payload schema
    """
    try:
        decoded = base64.b64decode(header_value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Failed to decode payment header: invalid base64: {e}")
        raise DecodeError("Invalid payment header encoding") from e

    try:
        payload_dict = json.loads(decoded)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to parse payment header JSON: {e}")
        raise DecodeError("Invalid payment payload") from e

    if not isinstance(payload_dict, dict):
        logger.warning(f"Payment header JSON is not an object: {type(payload_dict).__name__}")
        raise DecodeError("Invalid payment payload")

    try:
        return PaymentPayload.model_validate(payload_dict)
    except ValidationError as e:
        logger.warning(f"Payment payload does not match schema: {e.error_count()} error(s)")
        raise DecodeError("Invalid payment payload") from e


def encode_payment_header(payload: PaymentPayload) -> str:
    """Encode a PaymentPayload the way clients send it in the payment header."""
    payload_json = json.dumps(payload.to_wire())
    return base64.b64encode(payload_json.encode("utf-8")).decode("ascii")


def encode_requirements(requirements: PaymentRequirements) -> Dict[str, Any]:
    return requirements.to_wire()


def encode_payment_required(requirements: PaymentRequirements) -> Dict[str, Any]:
    """Build the 402 body advertising a single accepted requirement."""
    return PaymentRequiredResponse(accepts=[requirements]).to_wire()
