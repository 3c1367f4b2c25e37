"""
Tests for the X-PAYMENT header codec
"""

import base64
import json

import pytest

from x402_vrf.codec import PaymentHeaderError, decode_payment_header, encode_payment_header
from x402_vrf.eip3009 import create_payment_payload

from conftest import NOW


def _b64(data) -> str:
    if not isinstance(data, bytes):
        data = json.dumps(data).encode()
    return base64.b64encode(data).decode()


def test_round_trip(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    decoded = decode_payment_header(encode_payment_header(payload))
    assert decoded == payload
    assert decoded.payer == payload.payload.authorization.from_


def test_header_uses_wire_field_names(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    data = json.loads(base64.b64decode(encode_payment_header(payload)))
    assert data["x402Version"] == 1
    assert data["networkId"] == "84532"
    assert set(data["payload"]["authorization"]) == {
        "from", "to", "value", "validAfter", "validBefore", "nonce"
    }


@pytest.mark.parametrize("header", ["", "   ", "not base64!!", _b64(b"hello"), _b64([1, 2, 3])])
def test_rejects_garbage(header):
    with pytest.raises(PaymentHeaderError):
        decode_payment_header(header)


def test_rejects_missing_fields(payer_key, terms):
    data = json.loads(base64.b64decode(encode_payment_header(create_payment_payload(payer_key, terms, now=NOW))))
    del data["payload"]["signature"]
    with pytest.raises(PaymentHeaderError, match="Invalid or incomplete"):
        decode_payment_header(_b64(data))


def test_rejects_unknown_version_and_scheme(payer_key, terms):
    data = json.loads(base64.b64decode(encode_payment_header(create_payment_payload(payer_key, terms, now=NOW))))

    with pytest.raises(PaymentHeaderError, match="x402Version"):
        decode_payment_header(_b64({**data, "x402Version": 2}))
    with pytest.raises(PaymentHeaderError, match="scheme"):
        decode_payment_header(_b64({**data, "scheme": "upto"}))
