# tests/test_x402_facilitator.py
"""
Unit tests for the facilitator client.

Requests are answered by httpx.MockTransport, so nothing leaves the process.
"""
import asyncio
import json

import httpx
import pytest

from app.x402.codec import decode_payment_header
from app.x402.exceptions import TransportError
from app.x402.facilitator import SETTLE_PATH, VERIFY_PATH, FacilitatorClient
from app.x402.middleware import create_payment_requirements

from tests.x402_helpers import PAYER, make_gate_config, make_payment_header

RESOURCE = "https://gateway.example.com/api/v1/forecast"


def make_client(handler, base_url: str = "http://facilitator.test/") -> FacilitatorClient:
    return FacilitatorClient(base_url=base_url, timeout=5.0, transport=httpx.MockTransport(handler))


def payment_and_requirements():
    payment = decode_payment_header(make_payment_header())
    requirements = create_payment_requirements(make_gate_config(), RESOURCE)
    return payment, requirements


class TestVerify:
    """Test facilitator verification calls."""

    def test_posts_envelope_to_verify_endpoint(self):
        """Verify posts x402Version, paymentPayload and paymentRequirements."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"isValid": True, "payer": PAYER})

        payment, requirements = payment_and_requirements()
        result = asyncio.run(make_client(handler).verify(payment, requirements))

        assert result.is_valid is True
        assert result.payer == PAYER
        assert seen["method"] == "POST"
        assert seen["url"] == "http://facilitator.test" + VERIFY_PATH
        assert seen["body"]["x402Version"] == 1
        assert seen["body"]["paymentPayload"]["payload"]["authorization"]["from"] == PAYER
        assert seen["body"]["paymentRequirements"]["resource"] == RESOURCE
        assert seen["body"]["paymentRequirements"]["payTo"] == requirements.pay_to

    def test_invalid_verdict_is_returned(self):
        """isValid=false is a verdict, not an error."""
        def handler(request):
            return httpx.Response(200, json={"isValid": False, "invalidReason": "insufficient_funds"})

        payment, requirements = payment_and_requirements()
        result = asyncio.run(make_client(handler).verify(payment, requirements))

        assert result.is_valid is False
        assert result.invalid_reason == "insufficient_funds"

    def test_verdict_with_error_status_is_returned(self):
        """A decodable verdict is used even when the status is 4xx."""
        def handler(request):
            return httpx.Response(400, json={"isValid": False, "invalidReason": "invalid_signature"})

        payment, requirements = payment_and_requirements()
        result = asyncio.run(make_client(handler).verify(payment, requirements))

        assert result.is_valid is False
        assert result.invalid_reason == "invalid_signature"

    def test_timeout_is_transport_error(self):
        """A timeout raises TransportError."""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        payment, requirements = payment_and_requirements()
        with pytest.raises(TransportError, match="timed out"):
            asyncio.run(make_client(handler).verify(payment, requirements))

    def test_slow_trickled_answer_hits_overall_deadline(self):
        """A verdict sent a byte at a time cannot outlast the timeout."""
        verdict = json.dumps({"isValid": True, "payer": PAYER}).encode()

        async def trickle():
            for i in range(len(verdict)):
                await asyncio.sleep(0.05)
                yield verdict[i:i + 1]

        def handler(request):
            return httpx.Response(200, content=trickle())

        client = FacilitatorClient(
            base_url="http://facilitator.test", timeout=0.3, transport=httpx.MockTransport(handler)
        )
        payment, requirements = payment_and_requirements()
        with pytest.raises(TransportError, match="timed out after 0.3s"):
            asyncio.run(client.verify(payment, requirements))

    def test_quick_answer_within_deadline(self):
        def handler(request):
            return httpx.Response(200, json={"isValid": True, "payer": PAYER})

        client = FacilitatorClient(
            base_url="http://facilitator.test", timeout=0.3, transport=httpx.MockTransport(handler)
        )
        payment, requirements = payment_and_requirements()
        assert asyncio.run(client.verify(payment, requirements)).is_valid is True

    def test_connection_error_is_transport_error(self):
        """An unreachable facilitator raises TransportError."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        payment, requirements = payment_and_requirements()
        with pytest.raises(TransportError):
            asyncio.run(make_client(handler).verify(payment, requirements))

    def test_non_json_body_is_transport_error(self):
        """An undecodable body raises TransportError."""
        def handler(request):
            return httpx.Response(502, text="<html>Bad Gateway</html>")

        payment, requirements = payment_and_requirements()
        with pytest.raises(TransportError, match="HTTP 502"):
            asyncio.run(make_client(handler).verify(payment, requirements))

    def test_body_without_verdict_is_transport_error(self):
        """JSON without isValid raises TransportError."""
        def handler(request):
            return httpx.Response(400, json={"x402Version": 1, "error": "Missing payment payload"})

        payment, requirements = payment_and_requirements()
        with pytest.raises(TransportError):
            asyncio.run(make_client(handler).verify(payment, requirements))


class TestSettle:
    """Test facilitator settlement calls."""

    def test_posts_to_settle_endpoint(self):
        """Settle uses the settle endpoint and parses the result."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "success": True,
                "transaction": "0xdeadbeef",
                "network": "filecoin-calibration",
                "payer": PAYER,
            })

        payment, requirements = payment_and_requirements()
        result = asyncio.run(make_client(handler).settle(payment, requirements))

        assert seen["path"] == SETTLE_PATH
        assert set(seen["body"]) == {"x402Version", "paymentPayload", "paymentRequirements"}
        assert result.success is True
        assert result.transaction == "0xdeadbeef"
        assert result.network == "filecoin-calibration"

    def test_failed_settlement_is_returned(self):
        """success=false comes back as a result."""
        def handler(request):
            return httpx.Response(200, json={
                "success": False,
                "errorReason": "Payment already settled",
                "transaction": "",
                "network": "filecoin-calibration",
            })

        payment, requirements = payment_and_requirements()
        result = asyncio.run(make_client(handler).settle(payment, requirements))

        assert result.success is False
        assert result.error_reason == "Payment already settled"

    def test_settle_timeout_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        payment, requirements = payment_and_requirements()
        with pytest.raises(TransportError):
            asyncio.run(make_client(handler).settle(payment, requirements))


class TestClientConfig:
    """Test client construction."""

    def test_trailing_slash_stripped(self):
        client = FacilitatorClient(base_url="https://facilitator.example.com/")
        assert client.base_url == "https://facilitator.example.com"

    def test_default_timeout(self):
        client = FacilitatorClient(base_url="https://facilitator.example.com")
        assert client.timeout == 30.0
