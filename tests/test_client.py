"""
Tests for the paying httpx client
"""

import httpx
import pytest

from x402_vrf.client import PAYMENT_HEADER, PaymentAuth, PaymentRequiredError
from x402_vrf.codec import decode_payment_header
from x402_vrf.types import PaymentRequiredResponse
from x402_vrf.verifier import verify_payment

from conftest import NOW, RESOURCE, clock


def _challenge(terms, error="Payment required", details=None):
    body = PaymentRequiredResponse(payment_details=terms, error=error, details=details)
    return httpx.Response(402, json=body.model_dump(by_alias=True))


async def test_pays_and_retries_once(payer_key, payer, terms):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get(PAYMENT_HEADER))
        header = request.headers.get(PAYMENT_HEADER)
        if header is None:
            return _challenge(terms)
        payload = decode_payment_header(header)
        result = verify_payment(payload, terms, now=NOW)
        if not result.is_valid:
            return _challenge(terms, "Payment verification failed.", result.invalid_reason)
        return httpx.Response(200, json={"payer": payload.payer})

    auth = PaymentAuth(payer_key, clock=clock)
    async with httpx.AsyncClient(auth=auth, transport=httpx.MockTransport(handler)) as client:
        response = await client.post(RESOURCE, json={})

    assert response.status_code == 200
    assert response.json() == {"payer": payer}
    assert len(seen) == 2
    assert seen[0] is None and seen[1] is not None


async def test_second_challenge_raises(payer_key, terms):
    calls = []

    def handler(request):
        calls.append(request)
        return _challenge(terms, "Payment verification failed.", "insufficient_funds")

    auth = PaymentAuth(payer_key, clock=clock)
    async with httpx.AsyncClient(auth=auth, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(PaymentRequiredError, match="insufficient_funds"):
            await client.post(RESOURCE, json={})

    assert len(calls) == 2


async def test_refuses_to_pay_above_limit(payer_key, terms):
    calls = []

    def handler(request):
        calls.append(request)
        return _challenge(terms)

    auth = PaymentAuth(payer_key, max_amount=10_000, clock=clock)
    async with httpx.AsyncClient(auth=auth, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(PaymentRequiredError, match="exceeds limit"):
            await client.post(RESOURCE, json={})

    assert len(calls) == 1


async def test_unreadable_challenge(payer_key):
    auth = PaymentAuth(payer_key, clock=clock)
    transport = httpx.MockTransport(lambda request: httpx.Response(402, text="pay up"))
    async with httpx.AsyncClient(auth=auth, transport=transport) as client:
        with pytest.raises(PaymentRequiredError, match="Unreadable payment challenge"):
            await client.get(RESOURCE)


async def test_free_resources_are_not_paid_for(payer_key):
    seen = []

    def handler(request):
        seen.append(request.headers.get(PAYMENT_HEADER))
        return httpx.Response(200, json={"ok": True})

    auth = PaymentAuth(payer_key, clock=clock)
    async with httpx.AsyncClient(auth=auth, transport=httpx.MockTransport(handler)) as client:
        response = await client.get(RESOURCE)

    assert response.status_code == 200
    assert seen == [None]
