"""
Stateless verification of exact-scheme EVM payment payloads.

``verify_payment`` never moves funds and never touches the network: the only
expensive step is signature recovery. Checks run in a fixed order and stop at
the first failure so every rejection carries one specific reason.
"""

import time
from typing import Optional

import structlog
from eth_utils import is_same_address

from .eip3009 import eip712_domain, recover_authorizer
from .types import (
    InvalidReason,
    PaymentHeaderPayload,
    PaymentTerms,
    VerifyResponse,
)

logger = structlog.get_logger()


def _invalid(reason: InvalidReason) -> VerifyResponse:
    return VerifyResponse(is_valid=False, invalid_reason=reason.value)


def verify_payment(
    payload: PaymentHeaderPayload,
    terms: PaymentTerms,
    now: Optional[int] = None,
) -> VerifyResponse:
    """
    Verify a decoded payment payload against the advertised terms.

    Checks:
    1. Scheme and network match
    2. Payload targets the advertised resource
    3. Authorized value covers the required amount
    4. Authorized recipient is the payee
    5. Current time is inside the validity window, which is no longer than the deadline
    6. Signature recovers to the payer
    """
    now = int(time.time()) if now is None else now
    authorization = payload.payload.authorization

    if payload.scheme != terms.scheme:
        return _invalid(InvalidReason.INVALID_SCHEME)
    if payload.network_id != terms.network_id:
        return _invalid(InvalidReason.INVALID_NETWORK)

    if payload.resource != terms.resource:
        return _invalid(InvalidReason.INVALID_RESOURCE)

    if int(authorization.value) < terms.amount_required:
        return _invalid(InvalidReason.INSUFFICIENT_AMOUNT)

    if not is_same_address(authorization.to, terms.pay_to_address):
        return _invalid(InvalidReason.INVALID_PAYEE)

    valid_after = int(authorization.valid_after)
    valid_before = int(authorization.valid_before)
    if now < valid_after:
        return _invalid(InvalidReason.NOT_YET_VALID)
    if now > valid_before:
        return _invalid(InvalidReason.EXPIRED)
    if valid_before - valid_after > terms.required_deadline_seconds:
        return _invalid(InvalidReason.WINDOW_TOO_LONG)

    try:
        signer = recover_authorizer(
            authorization, payload.payload.signature, eip712_domain(terms)
        )
    except Exception as e:
        logger.info("Signature recovery failed", error=str(e))
        return _invalid(InvalidReason.INVALID_SIGNATURE)
    if not is_same_address(signer, authorization.from_):
        return _invalid(InvalidReason.INVALID_SIGNATURE)

    return VerifyResponse(is_valid=True)
