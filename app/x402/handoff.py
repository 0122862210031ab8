# app/x402/handoff.py
"""
Credential handoff for paid requests.

Once a payment is accepted the payment header must never reach the
backend; the gate's own backend credential takes its place.
"""
import logging

from starlette.datastructures import MutableHeaders
from starlette.requests import Request

from app.core.config import GateConfig

logger = logging.getLogger(__name__)

ACCEPT_ENCODING_HEADER = "Accept-Encoding"


def apply_credential_handoff(request: Request, config: GateConfig) -> None:
    """
    Rewrite the request headers in place before forwarding.

    - drops the payment header
    - sets the backend auth header to the configured credential
    - drops Accept-Encoding so the backend answers uncompressed and the
      gate can inspect the body before relaying it

    The ASGI scope is edited directly, so handlers further down the chain
    see the rewritten headers.
    """
    headers = MutableHeaders(scope=request.scope)
    del headers[config.payment_header_name]
    del headers[ACCEPT_ENCODING_HEADER]
    headers[config.auth_header_name] = config.backend_api_key

    # Request caches its Headers view on first access
    request.__dict__.pop("_headers", None)

    logger.debug(f"Credential handoff applied: set {config.auth_header_name}, removed {config.payment_header_name}")
