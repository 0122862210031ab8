# app/services/backend.py
"""Reverse-proxy forwarding of paid requests to the backend API."""
import logging
from typing import Optional

import httpx
from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Hop-by-hop headers are meaningful only for a single connection
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}


def build_backend_url(backend_url: str, path: str, query: str = "") -> str:
    """Join the backend base URL with the request path and query string."""
    url = backend_url.rstrip("/") + "/" + path.lstrip("/")
    if query:
        url += f"?{query}"
    return url


async def forward_request(
    request: Request,
    backend_url: str,
    timeout: float = 60.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Response:
    """
    Forward a request to the backend and relay its answer.

    Args:
        request: The incoming request, after the credential handoff
        backend_url: Base URL of the backend API
        timeout: Timeout for the backend call in seconds
        transport: Optional httpx transport (used by tests)

    Returns:
        The backend's status, headers and body

    Raises:
        httpx.HTTPError: If the backend cannot be reached
    """
    target_url = build_backend_url(backend_url, request.url.path, request.url.query)
    headers = [
        (key, value) for key, value in request.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    ]
    if "accept-encoding" not in request.headers:
        # httpx would otherwise advertise gzip on our behalf
        headers.append(("accept-encoding", "identity"))
    body = await request.body()

    logger.debug(f"Forwarding request: method={request.method}, url={target_url}, headers={len(headers)}")

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            backend_response = await client.request(
                request.method,
                target_url,
                headers=headers,
                content=body,
            )
    except httpx.TimeoutException as e:
        logger.error(f"Request timeout forwarding to {target_url}: {e}")
        raise
    except httpx.HTTPError as e:
        logger.error(f"HTTP error forwarding to {target_url}: {e}")
        raise

    response_headers = {
        key: value for key, value in backend_response.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "content-encoding"
    }
    return Response(
        content=backend_response.content,
        status_code=backend_response.status_code,
        headers=response_headers,
    )
