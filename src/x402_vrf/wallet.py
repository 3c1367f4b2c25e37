"""
Resource server wallet: signs and sends contract transactions.

Settlement and the randomness request both spend from this wallet, so sends
are serialized to keep account nonces consistent.
"""

import asyncio
from typing import Any, Dict

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
import structlog

logger = structlog.get_logger()


class TransactionRejected(Exception):
    """Raised when the chain refuses a transaction before it is broadcast."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ResourceWallet:
    """The server's own signing authority on the ledger."""

    def __init__(self, rpc_url: str, private_key: str):
        if not private_key:
            raise ValueError("Resource wallet private key is not configured")
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self._send_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    async def send(self, contract_call: Any, value: int = 0) -> str:
        """Build, sign and broadcast a contract call. Returns the 0x transaction hash."""
        async with self._send_lock:
            try:
                params: Dict[str, Any] = {
                    "from": self.account.address,
                    "nonce": await self.w3.eth.get_transaction_count(self.account.address, "pending"),
                }
                if value:
                    params["value"] = value
                tx = await contract_call.build_transaction(params)
                signed = self.account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                raise TransactionRejected(e.message or str(e)) from e
            except Web3Exception as e:
                raise TransactionRejected(str(e)) from e

        tx_hash_hex = "0x" + bytes(tx_hash).hex()
        logger.debug("Transaction sent", tx_hash=tx_hash_hex, sender=self.account.address)
        return tx_hash_hex

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_latency: float = 1.0) -> Dict[str, Any]:
        """Wait for the receipt of ``tx_hash``; raises ``asyncio.TimeoutError`` after ``timeout``."""
        try:
            return await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=poll_latency
            )
        except TimeExhausted as e:
            raise asyncio.TimeoutError(str(e)) from e

    async def close(self):
        await self.w3.provider.disconnect()
