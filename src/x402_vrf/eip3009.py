"""
Helpers for constructing, signing and recovering EIP-3009 authorizations.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address
from hexbytes import HexBytes

from .types import Authorization, ExactEvmPayload, PaymentHeaderPayload, PaymentTerms

__all__ = [
    "create_authorization",
    "create_payment_payload",
    "eip712_domain",
    "recover_authorizer",
    "sign_authorization",
    "token_domain",
    "typed_data",
]

DEFAULT_TOKEN_NAME = "USDC"
DEFAULT_TOKEN_VERSION = "2"

_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]
_TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


def token_domain(
    chain_id: int,
    token_address: str,
    name: str = DEFAULT_TOKEN_NAME,
    version: str = DEFAULT_TOKEN_VERSION,
) -> Dict[str, Any]:
    return {
        "name": name,
        "version": version,
        "chainId": int(chain_id),
        "verifyingContract": to_checksum_address(token_address),
    }


def eip712_domain(terms: PaymentTerms) -> Dict[str, Any]:
    """
    Signing domain of the token named in ``terms``.

    ``extra`` may carry the token's EIP-712 ``name`` and ``version``.
    """
    extra = terms.extra or {}
    return token_domain(
        int(terms.network_id),
        terms.usdc_address,
        name=extra.get("name", DEFAULT_TOKEN_NAME),
        version=extra.get("version", DEFAULT_TOKEN_VERSION),
    )


def typed_data(authorization: Authorization, domain: Dict[str, Any]) -> Dict[str, Any]:
    message = {
        "from": to_checksum_address(authorization.from_),
        "to": to_checksum_address(authorization.to),
        "value": int(authorization.value),
        "validAfter": int(authorization.valid_after),
        "validBefore": int(authorization.valid_before),
        "nonce": HexBytes(authorization.nonce),
    }
    return {
        "types": {
            "EIP712Domain": _DOMAIN_TYPE,
            "TransferWithAuthorization": _TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": domain,
        "message": message,
    }


def sign_authorization(
    private_key: str,
    authorization: Authorization,
    domain: Dict[str, Any],
) -> str:
    """Sign the TransferWithAuthorization typed data, returning a 0x-prefixed signature."""
    account = Account.from_key(private_key)
    signable = encode_typed_data(full_message=typed_data(authorization, domain))
    signature = account.sign_message(signable).signature
    return "0x" + bytes(signature).hex()


def recover_authorizer(
    authorization: Authorization,
    signature: str,
    domain: Dict[str, Any],
) -> str:
    """Return the checksum address that produced ``signature`` over ``authorization``."""
    signable = encode_typed_data(full_message=typed_data(authorization, domain))
    return Account.recover_message(signable, signature=HexBytes(signature))


def create_authorization(
    payer: str,
    terms: PaymentTerms,
    *,
    now: Optional[int] = None,
    nonce: Optional[bytes] = None,
) -> Authorization:
    """
    Authorization for exactly the advertised terms.

    The validity window starts at ``now`` and lasts ``requiredDeadlineSeconds``.
    A fresh 32-byte nonce is drawn unless one is supplied.
    """
    now = int(time.time()) if now is None else now
    nonce_bytes = nonce if nonce is not None else secrets.token_bytes(32)
    return Authorization(
        from_=to_checksum_address(payer),
        to=to_checksum_address(terms.pay_to_address),
        value=terms.max_amount_required,
        valid_after=str(now),
        valid_before=str(now + terms.required_deadline_seconds),
        nonce="0x" + nonce_bytes.hex(),
    )


def create_payment_payload(
    private_key: str,
    terms: PaymentTerms,
    *,
    now: Optional[int] = None,
    nonce: Optional[bytes] = None,
) -> PaymentHeaderPayload:
    """Build and sign the full X-PAYMENT payload for ``terms``."""
    account = Account.from_key(private_key)
    authorization = create_authorization(account.address, terms, now=now, nonce=nonce)
    signature = sign_authorization(private_key, authorization, eip712_domain(terms))
    return PaymentHeaderPayload(
        x402_version=1,
        scheme=terms.scheme,
        network_id=terms.network_id,
        payload=ExactEvmPayload(signature=signature, authorization=authorization),
        resource=terms.resource,
    )
