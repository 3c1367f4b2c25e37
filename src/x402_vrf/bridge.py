"""
Bridge between the payment gate and the randomness oracle.

``submit`` sends a mint request and records which payer it is for before
returning. Fulfillments arrive later as messages (``deliver``) and are applied
by ``on_fulfillment``, which is idempotent per request id.
"""

import asyncio
import itertools
from collections import OrderedDict, deque
from typing import Deque, Dict, List, Optional, Sequence, Tuple

import structlog
from eth_utils import to_checksum_address

from .oracle import RandomnessOracle
from .types import FulfillmentEvent, FulfillmentStatus, GatedActionRequest

logger = structlog.get_logger()


def select_outcome(random_word: int, outcome_count: int) -> int:
    """Pick one of ``outcome_count`` discrete outcomes: the full random value modulo the count."""
    if outcome_count <= 0:
        raise ValueError("outcome_count must be positive")
    return random_word % outcome_count


class CorrelationStore:
    """
    Keyed store of gated action requests.

    Pending beneficiaries are dropped once a request is fulfilled, and only the
    newest ``fulfilled_retention`` fulfilled rows are kept. Fulfillments that
    arrive before their request is recorded are held (up to ``early_capacity``)
    until ``submit`` records it.

    Payment authorizations are claimed here before their action is triggered,
    so one ``(payer, nonce)`` can fund at most one action. The newest
    ``claim_capacity`` claims are kept.
    """

    def __init__(
        self,
        fulfilled_retention: int = 10_000,
        early_capacity: int = 256,
        claim_capacity: int = 100_000,
    ):
        self.fulfilled_retention = fulfilled_retention
        self.early_capacity = early_capacity
        self.claim_capacity = claim_capacity
        self._rows: Dict[str, GatedActionRequest] = {}
        self._pending: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._fulfilled: Deque[str] = deque()
        self._early: "OrderedDict[str, FulfillmentEvent]" = OrderedDict()
        self._claims: "OrderedDict[Tuple[str, str], None]" = OrderedDict()

    def claim_authorization(self, payer: str, nonce: str) -> bool:
        """Claim ``(payer, nonce)`` for one action. False if it is already claimed."""
        # No await between check and insert: claims are exclusive per key on the loop.
        key = (payer.lower(), nonce.lower())
        if key in self._claims:
            return False
        self._claims[key] = None
        while len(self._claims) > self.claim_capacity:
            self._claims.popitem(last=False)
        return True

    def release_authorization(self, payer: str, nonce: str):
        self._claims.pop((payer.lower(), nonce.lower()), None)

    def lock(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = self._locks[request_id] = asyncio.Lock()
        return lock

    def insert(self, row: GatedActionRequest):
        self._rows[row.request_id] = row
        self._pending[row.request_id] = row.beneficiary

    def get(self, request_id: str) -> Optional[GatedActionRequest]:
        return self._rows.get(request_id)

    def beneficiary(self, request_id: str) -> Optional[str]:
        return self._pending.get(request_id)

    def pending_count(self) -> int:
        return len(self._pending)

    def mark_fulfilled(self, request_id: str):
        self._pending.pop(request_id, None)
        self._fulfilled.append(request_id)
        while len(self._fulfilled) > self.fulfilled_retention:
            evicted = self._fulfilled.popleft()
            self._rows.pop(evicted, None)
            self._locks.pop(evicted, None)

    def stash_early(self, event: FulfillmentEvent):
        self._early[event.request_id] = event
        while len(self._early) > self.early_capacity:
            self._early.popitem(last=False)

    def pop_early(self, request_id: str) -> Optional[FulfillmentEvent]:
        return self._early.pop(request_id, None)


class OracleBridge:
    """Submits gated actions and applies their asynchronous fulfillments."""

    def __init__(
        self,
        oracle: RandomnessOracle,
        outcomes: Sequence[str],
        store: Optional[CorrelationStore] = None,
    ):
        if not outcomes:
            raise ValueError("At least one outcome is required")
        self.oracle = oracle
        self.outcomes: List[str] = list(outcomes)
        self.store = store or CorrelationStore()
        self._token_ids = itertools.count(0)
        self._queue: "asyncio.Queue[FulfillmentEvent]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

    async def start(self):
        """Start consuming fulfillments and subscribe to the oracle."""
        if self._consumer is None:
            self._consumer = asyncio.create_task(self.run())
        await self.oracle.start(self.deliver)

    async def close(self):
        await self.oracle.close()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    async def submit(self, beneficiary: str) -> GatedActionRequest:
        """
        Request a mint for ``beneficiary`` on the server's own funds.

        The request id → beneficiary correlation is recorded before this
        returns. Raises :class:`~x402_vrf.oracle.TriggerError` if the oracle
        refuses the request.
        """
        beneficiary = to_checksum_address(beneficiary)
        request_id, tx_hash = await self.oracle.request(beneficiary)
        row = GatedActionRequest(request_id=request_id, beneficiary=beneficiary, tx_hash=tx_hash)
        async with self.store.lock(request_id):
            self.store.insert(row)
        logger.info("Gated action submitted", request_id=request_id, beneficiary=beneficiary, tx_hash=tx_hash)

        early = self.store.pop_early(request_id)
        if early is not None:
            await self.on_fulfillment(early.request_id, early.random_words)
        return row.model_copy(deep=True)

    def deliver(self, event: FulfillmentEvent):
        """Enqueue a fulfillment message. Safe to call from oracle callbacks."""
        self._queue.put_nowait(event)

    async def run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.on_fulfillment(event.request_id, event.random_words)
            except Exception:
                logger.exception("Applying fulfillment failed", request_id=event.request_id)
            finally:
                self._queue.task_done()

    async def drain(self):
        """Wait until every delivered fulfillment has been applied."""
        await self._queue.join()

    async def on_fulfillment(self, request_id: str, random_words: Sequence[int]) -> FulfillmentStatus:
        """
        Apply the oracle's result for ``request_id``.

        Duplicates are ignored; unknown ids are a no-op. The token id is
        assigned only after the fulfillment is recorded.
        """
        if not random_words:
            raise ValueError("Fulfillment carries no random words")

        row = self.store.get(request_id)
        if row is None:
            self.store.stash_early(FulfillmentEvent(request_id=request_id, random_words=list(random_words)))
            logger.warning("Fulfillment for unknown request ignored", request_id=request_id)
            return FulfillmentStatus.UNKNOWN

        async with self.store.lock(request_id):
            if row.fulfilled:
                logger.info("Duplicate fulfillment ignored", request_id=request_id)
                return FulfillmentStatus.DUPLICATE

            index = select_outcome(random_words[0], len(self.outcomes))
            row.random_words = list(random_words)
            row.outcome_index = index
            row.outcome_uri = self.outcomes[index]
            row.fulfilled = True
            self.store.mark_fulfilled(request_id)
            row.token_id = next(self._token_ids)

        logger.info(
            "Fulfillment applied",
            request_id=request_id,
            beneficiary=row.beneficiary,
            token_id=row.token_id,
            outcome=row.outcome_uri,
        )
        return FulfillmentStatus.APPLIED

    def get(self, request_id: str) -> Optional[GatedActionRequest]:
        row = self.store.get(request_id)
        return row.model_copy(deep=True) if row is not None else None
