# app/main.py
"""
Gateway application.

Run with:
    uvicorn app.main:create_app --factory
"""
import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from starlette.responses import PlainTextResponse

from app.core.config import GateConfig, Settings, get_settings, load_gate_config, load_gate_config_file
from app.services.backend import forward_request
from app.x402 import __version__
from app.x402.facilitator import FacilitatorClient
from app.x402.middleware import PaymentGateMiddleware

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(
    settings: Optional[Settings] = None,
    gate_config: Optional[GateConfig] = None,
    facilitator_client: Optional[FacilitatorClient] = None,
    backend_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the gateway: a reverse proxy to BACKEND_URL behind the payment gate.

    Raises:
        ConfigError: If the gate configuration is incomplete
    """
    settings = settings or get_settings()

    # Configure basic logging
    logging.basicConfig(level=settings.LOG_LEVEL.upper())

    if gate_config is None:
        if settings.X402_GATE_CONFIG_FILE:
            gate_config = load_gate_config_file(settings.X402_GATE_CONFIG_FILE)
        else:
            gate_config = load_gate_config()

    backend_url = str(settings.BACKEND_URL)
    app = FastAPI(title=settings.PROJECT_NAME, version=__version__)

    @app.get("/health", summary="Health Check", tags=["default"])
    def health():
        """ Basic health check endpoint. """
        return {"status": "ok", "service": settings.PROJECT_NAME}

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, path: str) -> Response:
        try:
            return await forward_request(
                request,
                backend_url=backend_url,
                timeout=settings.BACKEND_TIMEOUT_SECONDS,
                transport=backend_transport,
            )
        except httpx.HTTPError:
            return PlainTextResponse("Bad Gateway", status_code=502)

    app.add_middleware(
        PaymentGateMiddleware,
        config=gate_config,
        facilitator_client=facilitator_client,
    )

    logger.info(f"Gateway ready: forwarding paid requests to {backend_url}")
    return app
