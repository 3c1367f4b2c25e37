"""
Tests for payment verification
"""

import pytest
from eth_account import Account

from x402_vrf.eip3009 import create_authorization, create_payment_payload, eip712_domain, sign_authorization
from x402_vrf.types import ExactEvmPayload, InvalidReason
from x402_vrf.verifier import verify_payment

from conftest import NOW, new_key


def _with_authorization(payload, **changes):
    authorization = payload.payload.authorization.model_copy(update=changes)
    inner = payload.payload.model_copy(update={"authorization": authorization})
    return payload.model_copy(update={"payload": inner})


def test_valid_payment(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    result = verify_payment(payload, terms, now=NOW)
    assert result.is_valid
    assert result.invalid_reason is None


def test_window_bounds_are_inclusive(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    assert verify_payment(payload, terms, now=NOW + terms.required_deadline_seconds).is_valid


def test_overpayment_is_accepted(payer_key, terms):
    authorization = create_authorization(Account.from_key(payer_key).address, terms, now=NOW)
    authorization = authorization.model_copy(update={"value": "60000"})
    payload = create_payment_payload(payer_key, terms, now=NOW)
    payload = payload.model_copy(update={
        "payload": ExactEvmPayload(
            signature=sign_authorization(payer_key, authorization, eip712_domain(terms)),
            authorization=authorization,
        )
    })
    assert verify_payment(payload, terms, now=NOW).is_valid


@pytest.mark.parametrize("changes,reason", [
    ({"scheme": "upto"}, InvalidReason.INVALID_SCHEME),
    ({"network_id": "1"}, InvalidReason.INVALID_NETWORK),
    ({"resource": "http://localhost:4023/other"}, InvalidReason.INVALID_RESOURCE),
])
def test_envelope_mismatch(payer_key, terms, changes, reason):
    payload = create_payment_payload(payer_key, terms, now=NOW).model_copy(update=changes)
    assert verify_payment(payload, terms, now=NOW).invalid_reason == reason.value


@pytest.mark.parametrize("changes,reason", [
    ({"value": "49999"}, InvalidReason.INSUFFICIENT_AMOUNT),
    ({"to": "0x000000000000000000000000000000000000dEaD"}, InvalidReason.INVALID_PAYEE),
    ({"valid_before": str(NOW + 3600)}, InvalidReason.WINDOW_TOO_LONG),
    ({"nonce": "0x" + "11" * 32}, InvalidReason.INVALID_SIGNATURE),
])
def test_authorization_mismatch(payer_key, terms, changes, reason):
    payload = _with_authorization(create_payment_payload(payer_key, terms, now=NOW), **changes)
    assert verify_payment(payload, terms, now=NOW).invalid_reason == reason.value


def test_time_window(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    assert verify_payment(payload, terms, now=NOW - 1).invalid_reason == InvalidReason.NOT_YET_VALID.value
    assert verify_payment(payload, terms, now=NOW + 61).invalid_reason == InvalidReason.EXPIRED.value


def test_signature_from_someone_else(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    forged = sign_authorization(new_key(), payload.payload.authorization, eip712_domain(terms))
    payload = payload.model_copy(update={
        "payload": payload.payload.model_copy(update={"signature": forged})
    })
    assert verify_payment(payload, terms, now=NOW).invalid_reason == InvalidReason.INVALID_SIGNATURE.value


def test_unrecoverable_signature(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    payload = payload.model_copy(update={
        "payload": payload.payload.model_copy(update={"signature": "0x1234"})
    })
    assert verify_payment(payload, terms, now=NOW).invalid_reason == InvalidReason.INVALID_SIGNATURE.value


def test_signature_bound_to_token_domain(payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    other_token = terms.model_copy(update={"extra": {"name": "USD Coin", "version": "2"}})
    assert verify_payment(payload, other_token, now=NOW).invalid_reason == InvalidReason.INVALID_SIGNATURE.value
