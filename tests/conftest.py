"""
Shared fixtures: a fixed clock, a funded payer and the advertised mint terms.
"""

import pytest
from eth_account import Account

from x402_vrf.codec import encode_payment_header
from x402_vrf.eip3009 import create_payment_payload, eip712_domain
from x402_vrf.ledger import InMemoryLedger
from x402_vrf.types import PaymentTerms

NOW = 1_700_000_000
PAY_TO = "0x8700bfd6d1fa68b6e9b6eb3e8c8d3e7cfa0e5b1e"
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
RESOURCE = "http://localhost:4023/request-mint"


def clock() -> float:
    return NOW


def new_key() -> str:
    return "0x" + bytes(Account.create().key).hex()


def make_header(private_key: str, terms: PaymentTerms, now: int = NOW, nonce: bytes = None) -> str:
    return encode_payment_header(create_payment_payload(private_key, terms, now=now, nonce=nonce))


@pytest.fixture
def terms() -> PaymentTerms:
    return PaymentTerms(
        network_id="84532",
        max_amount_required="50000",
        resource=RESOURCE,
        description="Request a VRF NFT mint",
        pay_to_address=PAY_TO,
        required_deadline_seconds=60,
        usdc_address=USDC,
        extra={"name": "USDC", "version": "2"},
    )


@pytest.fixture
def payer_key() -> str:
    return new_key()


@pytest.fixture
def payer(payer_key) -> str:
    return Account.from_key(payer_key).address


@pytest.fixture
def ledger(terms) -> InMemoryLedger:
    return InMemoryLedger(eip712_domain(terms), starting_balance=10_000_000, clock=clock)
