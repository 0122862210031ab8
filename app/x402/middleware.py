# app/x402/middleware.py
"""
Payment gate middleware.

For every request to a gated path this middleware:
1. Returns 402 Payment Required with the payment requirements when no
   payment header is present
2. Decodes the payment header (400 when malformed)
3. Verifies the payment with the facilitator (401 when invalid, 500 when
   the facilitator cannot be reached)
4. Swaps the payment header for the backend credential and forwards
5. Settles the payment once the backend has answered with a 2xx

Verification always happens before forwarding and settlement always after
it. A client that disconnects while verification is in flight cancels it,
and the request is neither forwarded nor settled. Settlement runs after the
response has been relayed; its failures are logged and audited, never
surfaced to the caller.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from fastapi import Request, Response
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.types import ASGIApp

from app.core.config import GateConfig, load_gate_config
from app.x402.audit import AuditLog, generate_request_id
from app.x402.codec import decode_payment_header, encode_payment_required
from app.x402.exceptions import (
    ClientDisconnected,
    DecodeError,
    SettlementFailure,
    TransportError,
    VerificationRejected,
)
from app.x402.facilitator import FacilitatorClient
from app.x402.handoff import apply_credential_handoff
from app.x402.models import PaymentPayload, PaymentRequirements

logger = logging.getLogger(__name__)

MAX_LOGGED_BODY_CHARS = 1000
DISCONNECT_POLL_SECONDS = 0.1

VERIFY_ERROR_MESSAGE = "Internal Server Error during payment verification"
INVALID_PAYMENT_BODY = {"error": "Invalid Payment"}


class GateState(Enum):
    """Where a request stands in the payment flow."""
    START = "start"
    NO_PAYMENT_PRESENTED = "no_payment_presented"
    PAYMENT_DECODE_FAILED = "payment_decode_failed"
    AWAITING_VERIFICATION = "awaiting_verification"
    VERIFIED = "verified"
    REJECTED = "rejected"
    VERIFY_ERROR = "verify_error"
    FORWARDED = "forwarded"
    SETTLED = "settled"
    SETTLE_SKIPPED = "settle_skipped"


def is_public_path(path: str, config: GateConfig) -> bool:
    """Check if the request path is exempt from payment."""
    for public_path in config.public_paths:
        if path.rstrip("/") == public_path.rstrip("/"):
            return True
    return False


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def resolve_resource_url(request: Request) -> str:
    """
    Rebuild the URL the client asked for.

    The scheme is https when the connection is encrypted, http otherwise;
    host, path and query string come from the request as received. The path
    keeps its percent-encoding.
    """
    url = request.url
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else url.path
    resource = f"{url.scheme}://{url.netloc}{path}"
    if url.query:
        resource += f"?{url.query}"
    return resource


async def wait_for_disconnect(request: Request, interval: float = DISCONNECT_POLL_SECONDS) -> None:
    """Return once the client has closed the connection."""
    while not await request.is_disconnected():
        await asyncio.sleep(interval)


def create_payment_requirements(config: GateConfig, resource: str) -> PaymentRequirements:
    """
    Create the PaymentRequirements for a resource.

    The same inputs always give the same requirements, so the terms sent in
    the 402 challenge are exactly the terms the facilitator checks later.

    Args:
        config: Gate configuration
        resource: Full URL of the requested resource

    Returns:
        PaymentRequirements for the 402 response and the facilitator calls
    """
    return PaymentRequirements(
        scheme="exact",
        network=config.network,
        max_amount_required=config.max_amount_required,
        resource=resource,
        description=config.description,
        mime_type=config.mime_type,
        pay_to=config.payment_address,
        max_timeout_seconds=config.max_timeout_seconds,
        asset=config.asset,
        output_schema=config.output_schema,
        extra=config.extra,
    )


def create_402_response(payment_requirements: PaymentRequirements) -> JSONResponse:
    """Create an HTTP 402 Payment Required response."""
    return JSONResponse(
        status_code=402,
        content=encode_payment_required(payment_requirements),
    )


def relay_response(response: Response, body: bytes, background: Optional[BackgroundTask] = None) -> Response:
    """Rebuild a downstream response whose body has already been read."""
    relayed = Response(content=body, status_code=response.status_code, background=background)
    raw_headers = [(k, v) for k, v in response.raw_headers if k.lower() != b"content-length"]
    raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
    relayed.raw_headers = raw_headers
    return relayed


class PaymentGateMiddleware(BaseHTTPMiddleware):
    """
    x402 payment gate for FastAPI/Starlette applications.

    Configuration, facilitator client, audit log and logger are fixed at
    construction; nothing is shared between requests.
    """

    def __init__(
        self,
        app: ASGIApp,
        config: Union[GateConfig, Mapping[str, Any]],
        facilitator_client: Optional[FacilitatorClient] = None,
        audit_log: Optional[AuditLog] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(app)
        if not isinstance(config, GateConfig):
            config = load_gate_config(config)
        self.config = config
        self.facilitator_client = facilitator_client or FacilitatorClient(
            base_url=config.facilitator_url,
            timeout=config.facilitator_timeout_seconds,
        )
        self.logger = logger or logging.getLogger(__name__)
        self.audit_log = audit_log or AuditLog(config.audit_log_path, log=self.logger)
        self.logger.info(
            f"x402: Payment gate initialized: facilitator={config.facilitator_url}, "
            f"payment_address={config.payment_address}, network={config.network}"
        )

    def _enter(self, request: Request, state: GateState, request_id: str) -> None:
        request.state.x402_state = state
        self.logger.debug(f"x402 [{request_id}]: -> {state.value}")

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if is_public_path(request.url.path, self.config):
            return await call_next(request)

        request_id = generate_request_id()
        client_ip = get_client_ip(request)
        self._enter(request, GateState.START, request_id)
        self.logger.info(f"x402 [{request_id}]: Intercepting request from {client_ip}: {request.method} {request.url.path}")

        payment_header = request.headers.get(self.config.payment_header_name)
        resource = resolve_resource_url(request)
        payment_requirements = create_payment_requirements(self.config, resource)

        if not payment_header:
            self._enter(request, GateState.NO_PAYMENT_PRESENTED, request_id)
            self.logger.info(f"x402 [{request_id}]: Missing {self.config.payment_header_name} header, returning 402")
            self.audit_log.payment_required_sent(
                client_ip=client_ip,
                resource=resource,
                max_amount_required=payment_requirements.max_amount_required,
                network=payment_requirements.network,
                pay_to=payment_requirements.pay_to,
                request_id=request_id,
            )
            return create_402_response(payment_requirements)

        try:
            payment = decode_payment_header(payment_header)
        except DecodeError as e:
            self._enter(request, GateState.PAYMENT_DECODE_FAILED, request_id)
            self.logger.warning(f"x402 [{request_id}]: Rejecting malformed payment header from {client_ip}: {e}")
            self.audit_log.payment_rejected(client_ip, reason=str(e), stage="decode", request_id=request_id)
            return PlainTextResponse(str(e), status_code=400)

        self._enter(request, GateState.AWAITING_VERIFICATION, request_id)
        authorization = payment.payload.authorization
        self.logger.info(
            f"x402 [{request_id}]: Payment payload x402Version={payment.x402_version}, scheme={payment.scheme}, "
            f"network={payment.network}, from={authorization.from_}, to={authorization.to}, "
            f"value={authorization.value}, nonce={authorization.nonce}"
        )

        # Buffer the body first; watching for a disconnect reads from the
        # same receive channel.
        await request.body()

        try:
            payer = await self._verify(request, payment, payment_requirements, request_id)
        except ClientDisconnected as e:
            self._enter(request, GateState.VERIFY_ERROR, request_id)
            self.logger.warning(f"x402 [{request_id}]: Verification abandoned: {e}")
            self.audit_log.verify_error(client_ip, error_message=str(e), request_id=request_id)
            return PlainTextResponse(VERIFY_ERROR_MESSAGE, status_code=500)
        except TransportError as e:
            self._enter(request, GateState.VERIFY_ERROR, request_id)
            self.logger.error(f"x402 [{request_id}]: Facilitator verification error: {e}")
            self.audit_log.verify_error(client_ip, error_message=str(e), request_id=request_id)
            return PlainTextResponse(VERIFY_ERROR_MESSAGE, status_code=500)
        except VerificationRejected as e:
            self._enter(request, GateState.REJECTED, request_id)
            self.logger.warning(f"x402 [{request_id}]: Rejecting request: invalid payment: {e}")
            self.audit_log.payment_rejected(
                client_ip, reason=str(e), stage="verify", wallet_address=e.payer, request_id=request_id
            )
            return JSONResponse(status_code=401, content=INVALID_PAYMENT_BODY)

        self._enter(request, GateState.VERIFIED, request_id)
        request.state.x402_payer = payer
        self.audit_log.payment_verified(
            client_ip, payer=payer, bypassed=self._is_debug_bypass(payment), request_id=request_id
        )

        apply_credential_handoff(request, self.config)
        self.logger.info(f"x402 [{request_id}]: Forwarding {request.method} {request.url.path} to backend")

        response = await call_next(request)

        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        self._enter(request, GateState.FORWARDED, request_id)
        self.logger.info(f"x402 [{request_id}]: Backend response status: {response.status_code}")
        text = body.decode("utf-8", errors="replace")
        if len(text) > MAX_LOGGED_BODY_CHARS:
            self.logger.debug(f"x402 [{request_id}]: Backend response body (first {MAX_LOGGED_BODY_CHARS} chars): {text[:MAX_LOGGED_BODY_CHARS]}...")
        else:
            self.logger.debug(f"x402 [{request_id}]: Backend response body: {text}")

        if not is_success_status(response.status_code):
            self._enter(request, GateState.SETTLE_SKIPPED, request_id)
            self.logger.info(f"x402 [{request_id}]: Backend returned {response.status_code}, payment not settled")
            self.audit_log.settlement_skipped(
                client_ip, backend_status=response.status_code, payer=payer, request_id=request_id
            )
            return relay_response(response, body)

        # Settle after the response has gone out to the client
        settlement = BackgroundTask(
            self._settle,
            request=request,
            payment=payment,
            payment_requirements=payment_requirements,
            client_ip=client_ip,
            payer=payer,
            request_id=request_id,
        )
        return relay_response(response, body, background=settlement)

    def _is_debug_bypass(self, payment: PaymentPayload) -> bool:
        return (
            self.config.allow_debug_bypass
            and payment.payload.signature == self.config.debug_bypass_signature
        )

    async def _verify(
        self,
        request: Request,
        payment: PaymentPayload,
        payment_requirements: PaymentRequirements,
        request_id: str,
    ) -> Optional[str]:
        """
        Verify a payment with the facilitator.

        The facilitator call is cancelled if the client disconnects first.

        Returns:
            The payer address reported by the facilitator, if any

        Raises:
            VerificationRejected: If the facilitator judges the payment invalid
            ClientDisconnected: If the client went away during the call
            TransportError: If no verdict could be obtained
        """
        if self._is_debug_bypass(payment):
            self.logger.warning(f"x402 [{request_id}]: DEBUG: Bypassing payment verification")
            return payment.payload.authorization.from_

        verify_task = asyncio.ensure_future(
            self.facilitator_client.verify(
                payment=payment,
                payment_requirements=payment_requirements,
            )
        )
        disconnect_task = asyncio.ensure_future(wait_for_disconnect(request))
        try:
            done, _ = await asyncio.wait({verify_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (verify_task, disconnect_task):
                if not task.done():
                    task.cancel()

        if disconnect_task in done:
            disconnect_task.result()
            await asyncio.gather(verify_task, return_exceptions=True)
            raise ClientDisconnected("client disconnected during payment verification")

        verify_response = verify_task.result()
        if not verify_response.is_valid:
            raise VerificationRejected(verify_response.invalid_reason, payer=verify_response.payer)

        self.logger.info(f"x402 [{request_id}]: Payment verified for payer {verify_response.payer}")
        return verify_response.payer

    async def _settle(
        self,
        request: Request,
        payment: PaymentPayload,
        payment_requirements: PaymentRequirements,
        client_ip: str,
        payer: Optional[str],
        request_id: str,
    ) -> None:
        """
        Settle a payment for a response that has already been delivered.

        Nothing here reaches the caller. Failures end up in the log and the
        audit trail for reconciliation.
        """
        try:
            # The resource was already provided, so a client disconnect must
            # not cancel settlement.
            settle_response = await asyncio.shield(
                self.facilitator_client.settle(
                    payment=payment,
                    payment_requirements=payment_requirements,
                )
            )
            if not settle_response.success:
                raise SettlementFailure(
                    settle_response.error_reason,
                    network=settle_response.network,
                    payer=settle_response.payer or payer,
                )
        except TransportError as e:
            self.logger.error(f"x402 [{request_id}]: Failed to settle payment: {e}")
            self.audit_log.settlement_failed(
                client_ip,
                reason=str(e),
                stage="transport",
                resource=payment_requirements.resource,
                payer=payer,
                request_id=request_id,
            )
            self._enter(request, GateState.SETTLED, request_id)
            return
        except SettlementFailure as e:
            self.logger.error(f"x402 [{request_id}]: Facilitator reported settlement failure: {e}")
            self.audit_log.settlement_failed(
                client_ip,
                reason=str(e),
                stage="facilitator",
                resource=payment_requirements.resource,
                payer=e.payer,
                request_id=request_id,
            )
            self._enter(request, GateState.SETTLED, request_id)
            return

        self._enter(request, GateState.SETTLED, request_id)
        self.logger.info(f"x402 [{request_id}]: Payment settled successfully: {settle_response.transaction}")
        self.audit_log.payment_settled(
            client_ip,
            payer=settle_response.payer or payer,
            transaction_hash=settle_response.transaction,
            network=settle_response.network,
            request_id=request_id,
        )


def payment_gate(
    config: Union[GateConfig, Mapping[str, Any]],
    next_app: ASGIApp,
    facilitator_client: Optional[FacilitatorClient] = None,
    audit_log: Optional[AuditLog] = None,
    logger: Optional[logging.Logger] = None,
) -> ASGIApp:
    """
    Wrap an ASGI application with the payment gate.

    Args:
        config: A GateConfig, or the host's plugin configuration map
        next_app: The handler that serves paid requests
        facilitator_client: Facilitator to use instead of one built from config
        audit_log: Audit log to use instead of one built from config
        logger: Logger for gate messages

    Returns:
        An ASGI application enforcing payment in front of next_app

    Raises:
        ConfigError: If the configuration is missing or incomplete
    """
    return PaymentGateMiddleware(
        next_app,
        config=config,
        facilitator_client=facilitator_client,
        audit_log=audit_log,
        logger=logger,
    )
