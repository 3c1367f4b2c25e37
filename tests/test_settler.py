"""
Tests for settlement against the in-memory ledger
"""

import asyncio

from x402_vrf.eip3009 import create_payment_payload, eip712_domain
from x402_vrf.ledger import InMemoryLedger
from x402_vrf.settler import SETTLEMENT_TIMEOUT, Settler

from conftest import NOW, PAY_TO, clock


async def test_settle_moves_funds(ledger, payer_key, payer, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)

    receipt = await Settler(ledger).settle(payload)

    assert receipt.success
    assert receipt.tx_hash.startswith("0x")
    assert receipt.error is None
    assert receipt.payer == payer
    assert receipt.network_id == "84532"
    assert await ledger.balance_of(payer) == 10_000_000 - 50_000
    assert await ledger.balance_of(PAY_TO) == 10_000_000 + 50_000


async def test_same_authorization_settles_once(ledger, payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW)
    settler = Settler(ledger)

    first = await settler.settle(payload)
    second = await settler.settle(payload)

    assert first.success
    assert not second.success
    assert second.tx_hash is None
    assert second.error == "FiatTokenV2: authorization is used or canceled"
    assert len(ledger.transfers) == 1


async def test_ledger_reason_is_returned_verbatim(payer_key, terms):
    broke = InMemoryLedger(eip712_domain(terms), starting_balance=0, clock=clock)
    payload = create_payment_payload(payer_key, terms, now=NOW)

    receipt = await Settler(broke).settle(payload)

    assert not receipt.success
    assert receipt.error == "ERC20: transfer amount exceeds balance"
    assert broke.transfers == []


async def test_expired_authorization_rejected_by_ledger(ledger, payer_key, terms):
    payload = create_payment_payload(payer_key, terms, now=NOW - 3600)

    receipt = await Settler(ledger).settle(payload)

    assert not receipt.success
    assert receipt.error == "FiatTokenV2: authorization is expired"


async def test_finality_timeout(payer_key, terms):
    slow = InMemoryLedger(eip712_domain(terms), starting_balance=10_000_000, finality_delay=1.0, clock=clock)
    payload = create_payment_payload(payer_key, terms, now=NOW)

    receipt = await Settler(slow, timeout_seconds=0.05).settle(payload)

    assert not receipt.success
    assert receipt.error == SETTLEMENT_TIMEOUT


async def test_reverted_transaction_is_a_failure(ledger, payer_key, terms):
    class RevertingLedger(InMemoryLedger):
        async def wait_for_finality(self, tx_hash):
            return False

    reverting = RevertingLedger(ledger.domain, starting_balance=10_000_000, clock=clock)
    payload = create_payment_payload(payer_key, terms, now=NOW)

    receipt = await Settler(reverting).settle(payload)

    assert not receipt.success
    assert "reverted" in receipt.error


async def test_submission_timeout(ledger, payer_key, terms):
    class StalledLedger(InMemoryLedger):
        async def submit_transfer(self, payload):
            await asyncio.sleep(1.0)
            return await super().submit_transfer(payload)

    stalled = StalledLedger(ledger.domain, starting_balance=10_000_000, clock=clock)
    payload = create_payment_payload(payer_key, terms, now=NOW)

    receipt = await Settler(stalled, timeout_seconds=0.05).settle(payload)

    assert not receipt.success
    assert receipt.error == SETTLEMENT_TIMEOUT
    assert receipt.tx_hash is None
    assert stalled.transfers == []
