# app/x402/facilitator.py
"""
HTTP client for the x402 facilitator.

The facilitator verifies payment authorizations and settles them on chain.
The gate trusts its verdicts; anything that prevents a verdict from being
obtained is reported as a TransportError.
"""
import asyncio
import json
import logging
from typing import Optional, Type, TypeVar

import httpx
from pydantic import ValidationError

from app.x402.exceptions import TransportError
from app.x402.models import (
    FacilitatorRequest,
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
    X402Model,
)

logger = logging.getLogger(__name__)

VERIFY_PATH = "/api/v1/verify"
SETTLE_PATH = "/api/v1/settle"
DEFAULT_TIMEOUT_SECONDS = 30.0

ResponseModel = TypeVar("ResponseModel", bound=X402Model)


class FacilitatorClient:
    """
    Async client for the facilitator's verify and settle endpoints.

    Every call, from connecting to reading the last byte of the answer, is
    bounded by `timeout`. Calls are plain coroutines, so cancelling the
    calling task cancels the outbound request.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def verify(self, payment: PaymentPayload, payment_requirements: PaymentRequirements) -> VerifyResponse:
        """
        Ask the facilitator whether a payment satisfies the requirements.

        Returns:
            The facilitator's verdict; is_valid=False is a normal result

        Raises:
            TransportError: If the facilitator is unreachable, times out, or
                answers with a body that is not a verdict. A readable verdict
                is returned whatever the HTTP status
        """
        verify_response = await self._post(VERIFY_PATH, payment, payment_requirements, VerifyResponse)
        if not verify_response.is_valid:
            logger.info(f"Facilitator rejected payment: {verify_response.invalid_reason or 'no reason given'}")
        return verify_response

    async def settle(self, payment: PaymentPayload, payment_requirements: PaymentRequirements) -> SettleResponse:
        """
        Ask the facilitator to execute a verified payment.

        Returns:
            The settlement result; success=False is returned, not raised

        Raises:
            TransportError: As for verify
        """
        settle_response = await self._post(SETTLE_PATH, payment, payment_requirements, SettleResponse)
        if settle_response.success:
            logger.info(f"Payment settled with transaction hash: {settle_response.transaction}")
        return settle_response

    async def _post(
        self,
        path: str,
        payment: PaymentPayload,
        payment_requirements: PaymentRequirements,
        response_model: Type[ResponseModel],
    ) -> ResponseModel:
        url = f"{self.base_url}{path}"
        body = FacilitatorRequest(
            payment_payload=payment,
            payment_requirements=payment_requirements,
        ).to_wire()
        logger.debug(f"POST {url}: {json.dumps(body)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                # httpx times each read separately; a slow trickle of bytes
                # needs an overall deadline
                response = await asyncio.wait_for(client.post(url, json=body), self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Facilitator request to {url} did not complete within {self.timeout}s")
            raise TransportError(f"facilitator request timed out after {self.timeout}s") from e
        except httpx.TimeoutException as e:
            logger.error(f"Facilitator request to {url} timed out after {self.timeout}s")
            raise TransportError(f"facilitator request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Facilitator request to {url} failed: {e}")
            raise TransportError(f"facilitator request failed: {e}") from e

        # Some facilitators answer a verdict with a 4xx status, so the body
        # decides, not the status code.
        try:
            return response_model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Failed to decode facilitator response from {url} (HTTP {response.status_code}): {e}")
            raise TransportError(
                f"failed to decode facilitator response (HTTP {response.status_code})"
            ) from e
