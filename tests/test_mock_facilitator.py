# tests/test_mock_facilitator.py
"""
Tests for the development facilitator.
"""
import pytest
from fastapi.testclient import TestClient

from app.mock_facilitator import create_mock_facilitator

from tests.x402_helpers import PAYER, make_payment_dict, make_payment_header

REQUIREMENTS = {"scheme": "exact", "network": "filecoin-calibration", "resource": "http://testserver/a"}


def call(payment=None):
    return {"x402Version": 1, "paymentPayload": payment, "paymentRequirements": REQUIREMENTS}


class TestVerifyEndpoint:
    """Test /api/v1/verify."""

    def test_valid_structure_accepted(self):
        client = TestClient(create_mock_facilitator())
        response = client.post("/api/v1/verify", json=call(make_payment_dict()))

        assert response.status_code == 200
        assert response.json() == {"isValid": True, "payer": PAYER}

    def test_wrong_scheme_rejected(self):
        payment = make_payment_dict()
        payment["scheme"] = "upto"
        client = TestClient(create_mock_facilitator())
        response = client.post("/api/v1/verify", json=call(payment))

        assert response.json() == {"isValid": False, "invalidReason": "Invalid payment structure"}

    def test_missing_payload(self):
        client = TestClient(create_mock_facilitator())
        response = client.post("/api/v1/verify", json=call(None))

        assert response.status_code == 400
        assert response.json()["error"] == "Missing payment payload"

    def test_payment_from_header(self):
        """A base64 X-Payment header stands in for the body payload."""
        client = TestClient(create_mock_facilitator())
        response = client.post(
            "/api/v1/verify",
            headers={"X-Payment": make_payment_header()},
            json={"x402Version": 1, "paymentRequirements": REQUIREMENTS},
        )

        assert response.status_code == 200
        assert response.json() == {"isValid": True, "payer": PAYER}

    def test_header_wins_over_body(self):
        bad = make_payment_dict()
        bad["scheme"] = "upto"
        client = TestClient(create_mock_facilitator())
        response = client.post("/api/v1/verify", headers={"X-Payment": make_payment_header()}, json=call(bad))

        assert response.json()["isValid"] is True

    def test_header_without_body(self):
        client = TestClient(create_mock_facilitator())
        response = client.post("/api/v1/verify", headers={"X-Payment": make_payment_header()})

        assert response.json() == {"isValid": True, "payer": PAYER}

    @pytest.mark.parametrize("header_value", ["not-base64!!", "bm90IGpzb24="])
    def test_undecodable_header(self, header_value):
        client = TestClient(create_mock_facilitator())
        response = client.post("/api/v1/verify", headers={"X-Payment": header_value}, json=call(None))

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid X-Payment header encoding"


class TestSettleEndpoint:
    """Test /api/v1/settle."""

    def test_settles_once(self):
        client = TestClient(create_mock_facilitator())
        payment = make_payment_dict()

        first = client.post("/api/v1/settle", json=call(payment)).json()
        assert first["success"] is True
        assert first["transaction"].startswith("0x")
        assert first["network"] == "filecoin-calibration"
        assert first["payer"] == PAYER

        second = client.post("/api/v1/settle", json=call(payment)).json()
        assert second["success"] is False
        assert second["errorReason"] == "Payment already settled"
        assert second["transaction"] == ""

    def test_different_nonces_settle_independently(self):
        client = TestClient(create_mock_facilitator())

        assert client.post("/api/v1/settle", json=call(make_payment_dict(nonce="0x01"))).json()["success"] is True
        assert client.post("/api/v1/settle", json=call(make_payment_dict(nonce="0x02"))).json()["success"] is True

    def test_ledgers_are_per_app(self):
        payment = make_payment_dict()
        assert TestClient(create_mock_facilitator()).post("/api/v1/settle", json=call(payment)).json()["success"]
        assert TestClient(create_mock_facilitator()).post("/api/v1/settle", json=call(payment)).json()["success"]

    def test_invalid_structure_not_settled(self):
        payment = make_payment_dict()
        payment["x402Version"] = 2
        client = TestClient(create_mock_facilitator())
        response = client.post("/api/v1/settle", json=call(payment)).json()

        assert response["success"] is False
        assert response["errorReason"] == "Invalid payment structure"


class TestInfoEndpoints:
    def test_info(self):
        body = TestClient(create_mock_facilitator()).get("/api/v1/info").json()
        assert body["supportedSchemes"] == ["exact"]
        assert "filecoin-calibration" in body["supportedNetworks"]

    def test_health(self):
        assert TestClient(create_mock_facilitator()).get("/health").json() == {"status": "healthy"}
