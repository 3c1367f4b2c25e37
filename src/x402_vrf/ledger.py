"""
Ledger backends that execute EIP-3009 ``transferWithAuthorization``.

Nonce uniqueness is a ledger property: once an authorization's nonce has been
used, any further transfer presenting it is rejected. Settlement retries rely
on that to stay safe.
"""

import asyncio
import itertools
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from eth_utils import is_same_address, keccak, to_checksum_address
from hexbytes import HexBytes
import structlog

from .eip3009 import recover_authorizer
from .types import ExactEvmPayload
from .wallet import ResourceWallet, TransactionRejected

logger = structlog.get_logger()

USDC_ABI = [
    {
        "type": "function",
        "name": "transferWithAuthorization",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "authorizationState",
        "stateMutability": "view",
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class LedgerRejected(Exception):
    """The ledger refused a transfer. ``reason`` is the ledger's own message."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class Ledger(ABC):
    """Token ledger able to execute signed transfer authorizations."""

    @abstractmethod
    async def authorization_state(self, authorizer: str, nonce: str) -> bool:
        """True when ``nonce`` has already been used or cancelled for ``authorizer``."""

    @abstractmethod
    async def balance_of(self, address: str) -> int:
        ...

    @abstractmethod
    async def submit_transfer(self, payload: ExactEvmPayload) -> str:
        """Submit the transfer using the server's own signing authority; returns the tx hash."""

    @abstractmethod
    async def wait_for_finality(self, tx_hash: str) -> bool:
        """Block until ``tx_hash`` is final. Returns False if it reverted."""

    async def close(self):
        pass


class InMemoryLedger(Ledger):
    """
    In-process EIP-3009 token.

    Mirrors the FiatToken checks (window, signature, nonce reuse, balance) and
    keeps every accepted transfer so callers can audit fund movements. Useful
    for local development and tests; ``finality_delay`` simulates block time.
    """

    def __init__(
        self,
        domain: Dict[str, Any],
        *,
        balances: Optional[Dict[str, int]] = None,
        starting_balance: int = 0,
        finality_delay: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        self.domain = domain
        self.starting_balance = starting_balance
        self.finality_delay = finality_delay
        self.clock = clock
        self._balances: Dict[str, int] = {
            to_checksum_address(address): amount for address, amount in (balances or {}).items()
        }
        self._used_nonces: Set[Tuple[str, str]] = set()
        self._receipts: Dict[str, bool] = {}
        self._lock = asyncio.Lock()
        self._counter = itertools.count()
        self.transfers: List[Dict[str, Any]] = []

    async def authorization_state(self, authorizer: str, nonce: str) -> bool:
        return (authorizer.lower(), nonce.lower()) in self._used_nonces

    async def balance_of(self, address: str) -> int:
        return self._balances.get(to_checksum_address(address), self.starting_balance)

    async def submit_transfer(self, payload: ExactEvmPayload) -> str:
        auth = payload.authorization
        key = (auth.from_.lower(), auth.nonce.lower())
        value = int(auth.value)
        now = int(self.clock())

        async with self._lock:
            if key in self._used_nonces:
                raise LedgerRejected("FiatTokenV2: authorization is used or canceled")
            if now < int(auth.valid_after):
                raise LedgerRejected("FiatTokenV2: authorization is not yet valid")
            if now > int(auth.valid_before):
                raise LedgerRejected("FiatTokenV2: authorization is expired")
            try:
                signer = recover_authorizer(auth, payload.signature, self.domain)
            except Exception as e:
                raise LedgerRejected(f"FiatTokenV2: invalid signature ({e})") from e
            if not is_same_address(signer, auth.from_):
                raise LedgerRejected("FiatTokenV2: invalid signature")

            payer = to_checksum_address(auth.from_)
            payee = to_checksum_address(auth.to)
            payer_balance = self._balances.get(payer, self.starting_balance)
            if payer_balance < value:
                raise LedgerRejected("ERC20: transfer amount exceeds balance")

            self._used_nonces.add(key)
            self._balances[payer] = payer_balance - value
            self._balances[payee] = self._balances.get(payee, self.starting_balance) + value

            seed = f"{payer}:{auth.nonce}:{next(self._counter)}".encode()
            tx_hash = "0x" + keccak(seed).hex()
            self._receipts[tx_hash] = True
            self.transfers.append(
                {"txHash": tx_hash, "from": payer, "to": payee, "value": value, "nonce": auth.nonce}
            )

        logger.debug("In-memory transfer applied", tx_hash=tx_hash, payer=payer, value=value)
        return tx_hash

    async def wait_for_finality(self, tx_hash: str) -> bool:
        if self.finality_delay:
            await asyncio.sleep(self.finality_delay)
        try:
            return self._receipts[tx_hash]
        except KeyError:
            raise LedgerRejected(f"Unknown transaction {tx_hash}") from None


class Web3Ledger(Ledger):
    """USDC on an EVM chain, driven through the resource server's wallet."""

    def __init__(
        self,
        wallet: ResourceWallet,
        token_address: str,
        *,
        receipt_timeout: float = 120.0,
        poll_latency: float = 1.0,
    ):
        self.wallet = wallet
        self.receipt_timeout = receipt_timeout
        self.poll_latency = poll_latency
        self.token = wallet.w3.eth.contract(
            address=to_checksum_address(token_address),
            abi=USDC_ABI,
        )

    async def authorization_state(self, authorizer: str, nonce: str) -> bool:
        return await self.token.functions.authorizationState(
            to_checksum_address(authorizer), HexBytes(nonce)
        ).call()

    async def balance_of(self, address: str) -> int:
        return await self.token.functions.balanceOf(to_checksum_address(address)).call()

    async def submit_transfer(self, payload: ExactEvmPayload) -> str:
        auth = payload.authorization
        call = self.token.functions.transferWithAuthorization(
            to_checksum_address(auth.from_),
            to_checksum_address(auth.to),
            int(auth.value),
            int(auth.valid_after),
            int(auth.valid_before),
            HexBytes(auth.nonce),
            HexBytes(payload.signature),
        )
        try:
            return await self.wallet.send(call)
        except TransactionRejected as e:
            raise LedgerRejected(e.reason) from e

    async def wait_for_finality(self, tx_hash: str) -> bool:
        receipt = await self.wallet.wait_for_receipt(
            tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_latency
        )
        return receipt["status"] == 1
