"""
Randomness oracle backends for the gated NFT mint.

A backend accepts a mint request for a beneficiary and, later and on its own
schedule, delivers the VRF fulfillment for that request to a sink. Delivery
is at-least-once: sinks must tolerate duplicates and unknown ids.
"""

import asyncio
import itertools
import secrets
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Set, Tuple

from eth_utils import to_checksum_address
from web3.logs import DISCARD
import structlog

from .types import FulfillmentEvent
from .wallet import ResourceWallet, TransactionRejected

logger = structlog.get_logger()

FulfillmentSink = Callable[[FulfillmentEvent], None]

NFT_CONTRACT_ABI = [
    {
        "type": "function",
        "name": "requestNFT",
        "stateMutability": "payable",
        "inputs": [{"name": "_recipient", "type": "address"}],
        "outputs": [{"name": "requestId", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "NFTRequested",
        "anonymous": False,
        "inputs": [
            {"name": "requestId", "type": "uint256", "indexed": True},
            {"name": "recipient", "type": "address", "indexed": True},
        ],
    },
    {
        "type": "event",
        "name": "RequestFulfilled",
        "anonymous": False,
        "inputs": [
            {"name": "requestId", "type": "uint256", "indexed": False},
            {"name": "randomWords", "type": "uint256[]", "indexed": False},
        ],
    },
]


class TriggerError(Exception):
    """
    The oracle refused or failed to accept a request.

    ``tx_hash`` is set when the request was already broadcast, so the action
    may still happen on chain.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class RandomnessOracle(ABC):
    """External request/fulfillment system."""

    @abstractmethod
    async def request(self, beneficiary: str) -> Tuple[str, Optional[str]]:
        """Submit a request funded by the server. Returns ``(request_id, tx_hash)``."""

    async def start(self, sink: FulfillmentSink):
        """Begin delivering fulfillments to ``sink``."""

    async def close(self):
        pass


class SimulatedVrfOracle(RandomnessOracle):
    """
    Local stand-in for a VRF coordinator.

    Each request is paid from ``funding_wei``; once funds run out requests are
    refused. Fulfillments arrive ``fulfillment_delay`` seconds later, twice
    when ``duplicate_deliveries`` is set.
    """

    def __init__(
        self,
        *,
        funding_wei: int = 10**18,
        request_fee_wei: int = 10**16,
        fulfillment_delay: float = 2.0,
        num_words: int = 1,
        duplicate_deliveries: bool = False,
        auto_fulfill: bool = True,
    ):
        self.funding_wei = funding_wei
        self.request_fee_wei = request_fee_wei
        self.fulfillment_delay = fulfillment_delay
        self.num_words = num_words
        self.duplicate_deliveries = duplicate_deliveries
        self.auto_fulfill = auto_fulfill
        self._ids = itertools.count(1)
        self._sink: Optional[FulfillmentSink] = None
        self._handles: Set[asyncio.TimerHandle] = set()
        self.requests: List[Tuple[str, str]] = []

    async def start(self, sink: FulfillmentSink):
        self._sink = sink

    async def request(self, beneficiary: str) -> Tuple[str, Optional[str]]:
        if self.funding_wei < self.request_fee_wei:
            raise TriggerError(
                f"Insufficient oracle funding: have {self.funding_wei} wei, need {self.request_fee_wei}"
            )
        self.funding_wei -= self.request_fee_wei

        request_id = str(next(self._ids))
        self.requests.append((request_id, to_checksum_address(beneficiary)))
        logger.info("Simulated VRF request accepted", request_id=request_id, beneficiary=beneficiary)

        if self.auto_fulfill and self._sink is not None:
            event = FulfillmentEvent(
                request_id=request_id,
                random_words=[secrets.randbits(256) for _ in range(self.num_words)],
            )
            deliveries = 2 if self.duplicate_deliveries else 1
            loop = asyncio.get_running_loop()
            self._handles = {h for h in self._handles if h.when() > loop.time()}
            for _ in range(deliveries):
                handle = loop.call_later(self.fulfillment_delay, self._deliver, event)
                self._handles.add(handle)
        return request_id, None

    def _deliver(self, event: FulfillmentEvent):
        if self._sink is not None:
            self._sink(event)

    async def close(self):
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        self._sink = None


class Web3VrfOracle(RandomnessOracle):
    """
    VRF NFT contract on chain.

    ``requestNFT`` is paid by the resource wallet; the request id is read from
    the ``NFTRequested`` event in the receipt. Fulfillments are found by
    polling ``RequestFulfilled`` logs.
    """

    def __init__(
        self,
        wallet: ResourceWallet,
        contract_address: str,
        *,
        mint_value_wei: int = 10**16,
        poll_interval: float = 5.0,
        receipt_timeout: float = 120.0,
    ):
        self.wallet = wallet
        self.mint_value_wei = mint_value_wei
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout
        self.contract = wallet.w3.eth.contract(
            address=to_checksum_address(contract_address),
            abi=NFT_CONTRACT_ABI,
        )
        self._poll_task: Optional[asyncio.Task] = None

    async def request(self, beneficiary: str) -> Tuple[str, Optional[str]]:
        call = self.contract.functions.requestNFT(to_checksum_address(beneficiary))
        try:
            tx_hash = await self.wallet.send(call, value=self.mint_value_wei)
        except TransactionRejected as e:
            raise TriggerError(e.reason) from e

        try:
            receipt = await self.wallet.wait_for_receipt(tx_hash, timeout=self.receipt_timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                "Mint request broadcast but not mined before timeout",
                tx_hash=tx_hash,
                beneficiary=beneficiary,
                reconciliation_required=True,
            )
            raise TriggerError(f"Mint request {tx_hash} not mined before timeout", tx_hash=tx_hash) from e
        if receipt["status"] != 1:
            raise TriggerError(f"Mint request {tx_hash} reverted")

        events = self.contract.events.NFTRequested().process_receipt(receipt, errors=DISCARD)
        if not events:
            raise TriggerError(f"Mint request {tx_hash} emitted no NFTRequested event", tx_hash=tx_hash)
        request_id = str(events[0]["args"]["requestId"])
        logger.info("NFT mint requested", request_id=request_id, tx_hash=tx_hash, beneficiary=beneficiary)
        return request_id, tx_hash

    async def start(self, sink: FulfillmentSink):
        from_block = await self.wallet.w3.eth.block_number
        self._poll_task = asyncio.create_task(self._poll(sink, from_block))

    async def _poll(self, sink: FulfillmentSink, from_block: int):
        while True:
            try:
                latest = await self.wallet.w3.eth.block_number
                if latest >= from_block:
                    logs = await self.contract.events.RequestFulfilled().get_logs(
                        from_block=from_block, to_block=latest
                    )
                    for log in logs:
                        sink(
                            FulfillmentEvent(
                                request_id=str(log["args"]["requestId"]),
                                random_words=list(log["args"]["randomWords"]),
                            )
                        )
                    from_block = latest + 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Polling fulfillments failed", error=str(e), from_block=from_block)
            await asyncio.sleep(self.poll_interval)

    async def close(self):
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
