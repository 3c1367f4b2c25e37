"""
X-PAYMENT header codec.

The header is ``base64(JSON(PaymentHeaderPayload))``. Decoding validates the
envelope only; matching it against the advertised terms is the verifier's job.
"""

import base64
import binascii
import json

from pydantic import ValidationError

from .types import PaymentHeaderPayload, Scheme

SUPPORTED_X402_VERSIONS = (1,)


class PaymentHeaderError(ValueError):
    """Raised when an X-PAYMENT header is not a valid payment envelope."""


def encode_payment_header(payload: PaymentHeaderPayload) -> str:
    """Encode a payment payload into the X-PAYMENT header value."""
    raw = payload.model_dump_json(by_alias=True)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_payment_header(header: str) -> PaymentHeaderPayload:
    """Decode and structurally validate an X-PAYMENT header value."""
    if not header or not header.strip():
        raise PaymentHeaderError("Empty payment header")

    try:
        raw = base64.b64decode(header.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise PaymentHeaderError(f"Payment header is not valid base64: {e}") from e

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PaymentHeaderError(f"Payment header is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise PaymentHeaderError("Payment header must encode a JSON object")

    try:
        payload = PaymentHeaderPayload.model_validate(data)
    except ValidationError as e:
        raise PaymentHeaderError(f"Invalid or incomplete payment header content: {e}") from e

    if payload.x402_version not in SUPPORTED_X402_VERSIONS:
        raise PaymentHeaderError(f"Unsupported x402Version {payload.x402_version}")
    if payload.scheme != Scheme.EXACT.value:
        raise PaymentHeaderError(f"Unsupported scheme {payload.scheme!r}")

    return payload
