# app/mock_facilitator.py
"""
Mock x402 facilitator for local development and tests.

Accepts any structurally valid "exact" payment and refuses to settle the
same authorization twice. No signatures are checked. Verify also takes the
payment base64-encoded in an X-Payment header, which wins over the body.

Run with:
    uvicorn app.mock_facilitator:app --port 3000
"""
import base64
import json
import logging
import secrets
import time
from typing import Any, Dict, Optional, Set, Tuple

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.x402 import __version__
from app.x402.models import X402_VERSION

logger = logging.getLogger(__name__)

SUPPORTED_NETWORKS = ["base-sepolia", "filecoin-calibration"]
SUPPORTED_SCHEMES = ["exact"]


class FacilitatorCall(BaseModel):
    x402Version: int = X402_VERSION
    paymentPayload: Optional[Dict[str, Any]] = None
    paymentRequirements: Optional[Dict[str, Any]] = None


def _authorization(payment_payload: Dict[str, Any]) -> Dict[str, Any]:
    return (payment_payload.get("payload") or {}).get("authorization") or {}


def _is_acceptable(payment_payload: Dict[str, Any]) -> bool:
    return (
        payment_payload.get("x402Version") == X402_VERSION
        and payment_payload.get("scheme") == "exact"
        and bool(payment_payload.get("payload"))
    )


def _decode_payment_header(header_value: str) -> Optional[Dict[str, Any]]:
    try:
        decoded = json.loads(base64.b64decode(header_value))
    except ValueError as e:
        logger.info(f"[Mock Facilitator] Failed to decode X-Payment header: {e}")
        return None
    return decoded if isinstance(decoded, dict) else None


def _missing_payload() -> JSONResponse:
    logger.info("[Mock Facilitator] Missing payment payload")
    return JSONResponse(
        status_code=400,
        content={"x402Version": X402_VERSION, "error": "Missing payment payload"},
    )


def create_mock_facilitator() -> FastAPI:
    """Build a mock facilitator with its own settled-payment ledger."""
    app = FastAPI(title="Mock x402 Facilitator", version=__version__)
    settled: Set[Tuple[Any, ...]] = set()

    @app.post("/api/v1/verify")
    async def verify(
        call: Optional[FacilitatorCall] = None,
        x_payment: Optional[str] = Header(None, alias="X-Payment"),
    ):
        """Mock payment verification."""
        call = call or FacilitatorCall()
        if x_payment:
            logger.info("[Mock Facilitator] Processing X-Payment header")
            payment_payload = _decode_payment_header(x_payment)
            if payment_payload is None:
                return JSONResponse(
                    status_code=400,
                    content={"x402Version": X402_VERSION, "error": "Invalid X-Payment header encoding"},
                )
            call.paymentPayload = payment_payload

        if not call.paymentPayload:
            return _missing_payload()

        logger.info(f"[Mock Facilitator] Verify payload: {json.dumps(call.paymentPayload)}")
        if _is_acceptable(call.paymentPayload):
            payer = _authorization(call.paymentPayload).get("from")
            logger.info("[Mock Facilitator] Payment verified successfully")
            return {"isValid": True, "payer": payer}

        logger.info("[Mock Facilitator] Invalid payment structure")
        return {"isValid": False, "invalidReason": "Invalid payment structure"}

    @app.post("/api/v1/settle")
    async def settle(call: FacilitatorCall):
        """Mock settlement with replay protection."""
        if not call.paymentPayload:
            return _missing_payload()

        payment_payload = call.paymentPayload
        network = payment_payload.get("network") or ""
        authorization = _authorization(payment_payload)
        payment_key = tuple(authorization.get(field) for field in ("from", "to", "value", "nonce"))

        if payment_key in settled:
            logger.info("[Mock Facilitator] Payment already settled")
            return {
                "success": False,
                "errorReason": "Payment already settled",
                "transaction": "",
                "network": network,
            }

        if not _is_acceptable(payment_payload):
            logger.info("[Mock Facilitator] Cannot settle invalid payment")
            return {
                "success": False,
                "errorReason": "Invalid payment structure",
                "transaction": "",
                "network": network,
            }

        settled.add(payment_key)
        transaction = f"0x{int(time.time() * 1000):x}{secrets.token_hex(4)}"
        logger.info(f"[Mock Facilitator] Payment settled, transaction hash: {transaction}")
        return {
            "success": True,
            "transaction": transaction,
            "network": network or "base-sepolia",
            "payer": authorization.get("from"),
        }

    @app.get("/api/v1/info")
    async def info():
        return {
            "name": "Mock x402 Facilitator",
            "version": __version__,
            "supportedNetworks": SUPPORTED_NETWORKS,
            "supportedSchemes": SUPPORTED_SCHEMES,
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


app = create_mock_facilitator()
