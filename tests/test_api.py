"""
Tests for x402 VRF Gate API
"""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from x402_vrf.bridge import OracleBridge
from x402_vrf.client import PaymentAuth
from x402_vrf.facilitator import LocalFacilitator
from x402_vrf.gate import PaymentGate
from x402_vrf.main import app
from x402_vrf.oracle import SimulatedVrfOracle
from x402_vrf.services import get_bridge, get_facilitator, get_gate

from conftest import clock, make_header


client = TestClient(app)


@pytest.fixture
def services(terms, ledger):
    facilitator = LocalFacilitator(ledger, clock=clock)
    bridge = OracleBridge(SimulatedVrfOracle(auto_fulfill=False), ["ipfs://a", "ipfs://b"])
    gate = PaymentGate(terms, facilitator, bridge)
    app.dependency_overrides[get_gate] = lambda: gate
    app.dependency_overrides[get_facilitator] = lambda: facilitator
    app.dependency_overrides[get_bridge] = lambda: bridge
    yield gate
    app.dependency_overrides.clear()


def test_health():
    """Test health endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "x402-vrf-gate"


def test_root():
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "x402 VRF Gate"
    assert "endpoints" in data


def test_supported():
    """Test supported schemes endpoint."""
    response = client.get("/supported")
    assert response.status_code == 200
    data = response.json()
    assert data["kinds"][0]["scheme"] == "exact"
    assert data["kinds"][0]["networkId"] == "84532"


def test_unknown_path():
    """Unknown paths get a JSON 404."""
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}


def test_describe_facilitator_endpoints():
    for path in ("/verify", "/settle"):
        response = client.get(path)
        assert response.status_code == 200
        assert response.json()["body"] == {"payload": "string", "details": "PaymentDetails"}


def test_request_mint_no_payment(services, terms):
    """Test mint endpoint without payment returns 402 with the advertised terms."""
    response = client.post("/request-mint")
    assert response.status_code == 402
    data = response.json()
    assert data["error"] == "Payment required"
    assert data["paymentDetails"] == terms.model_dump(by_alias=True)


def test_request_mint_malformed_payment(services):
    response = client.post("/request-mint", headers={"X-PAYMENT": "garbage!"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid payment header format."


def test_request_mint_paid(services, payer, payer_key):
    """A paying client gets the mint request id and a settlement receipt."""
    response = client.post("/request-mint", auth=PaymentAuth(payer_key, clock=clock))
    assert response.status_code == 200
    data = response.json()
    assert data["nftRequestId"] == "1"
    assert data["settlement"]["success"] is True

    receipt = json.loads(base64.b64decode(response.headers["X-PAYMENT-RESPONSE"]))
    assert receipt["txHash"] == data["settlement"]["txHash"]

    status = client.get("/requests/1")
    assert status.status_code == 200
    assert status.json()["beneficiary"] == payer
    assert status.json()["fulfilled"] is False

    assert client.get("/requests/2").status_code == 404
    assert client.get("/reconciliation").json() == {"entries": []}


def test_verify_and_settle_endpoints(services, ledger, payer_key, terms):
    body = {"payload": make_header(payer_key, terms), "details": terms.model_dump(by_alias=True)}

    verified = client.post("/verify", json=body)
    assert verified.status_code == 200
    assert verified.json() == {"isValid": True, "invalidReason": None}

    settled = client.post("/settle", json=body)
    assert settled.json()["success"] is True
    assert settled.json()["txHash"] == ledger.transfers[0]["txHash"]

    replay = client.post("/verify", json=body)
    assert replay.json() == {"isValid": False, "invalidReason": "nonce_already_used"}


def test_fulfillment_is_queued(services):
    response = client.post("/oracle/fulfillments", json={"requestId": "7", "randomWords": [42]})
    assert response.status_code == 202
    assert response.json() == {"requestId": "7", "queued": True}


def test_fulfillment_requires_random_words(services):
    response = client.post("/oracle/fulfillments", json={"requestId": "7", "randomWords": []})
    assert response.status_code == 422
