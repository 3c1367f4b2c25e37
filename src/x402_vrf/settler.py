"""
Settlement of verified payment payloads.

The settler moves money, so it must only ever see payloads that already passed
verification. It does not verify again: the ledger's own authorization checks
are the last guard, and its rejection reason is returned verbatim.
"""

import asyncio

import structlog

from .ledger import Ledger, LedgerRejected
from .types import PaymentHeaderPayload, SettleResponse

logger = structlog.get_logger()

SETTLEMENT_TIMEOUT = "settlement-timeout"


class Settler:
    """Submits a transfer authorization to the ledger and waits for finality."""

    def __init__(self, ledger: Ledger, timeout_seconds: float = 30.0):
        self.ledger = ledger
        self.timeout_seconds = timeout_seconds

    async def settle(self, payload: PaymentHeaderPayload) -> SettleResponse:
        """
        Settle a payment on-chain.

        1. Submit transferWithAuthorization signed by the server wallet
        2. Wait (bounded) for finality
        3. Return a receipt with the transaction hash, or the failure reason
        """
        payer = payload.payer
        network_id = payload.network_id

        try:
            tx_hash = await asyncio.wait_for(
                self.ledger.submit_transfer(payload.payload),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Settlement submission timed out", payer=payer)
            return SettleResponse(success=False, error=SETTLEMENT_TIMEOUT, network_id=network_id, payer=payer)
        except LedgerRejected as e:
            logger.warning("Ledger rejected settlement", payer=payer, reason=e.reason)
            return SettleResponse(success=False, error=e.reason, network_id=network_id, payer=payer)

        try:
            final = await asyncio.wait_for(
                self.ledger.wait_for_finality(tx_hash),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Settlement not final before timeout", tx_hash=tx_hash, payer=payer)
            return SettleResponse(success=False, error=SETTLEMENT_TIMEOUT, network_id=network_id, payer=payer)
        except LedgerRejected as e:
            return SettleResponse(success=False, error=e.reason, network_id=network_id, payer=payer)

        if not final:
            logger.error("Settlement transaction reverted", tx_hash=tx_hash, payer=payer)
            return SettleResponse(
                success=False,
                error=f"Settlement transaction {tx_hash} reverted",
                network_id=network_id,
                payer=payer,
            )

        logger.info("Payment settled", tx_hash=tx_hash, payer=payer, network=network_id)
        return SettleResponse(success=True, tx_hash=tx_hash, network_id=network_id, payer=payer)
