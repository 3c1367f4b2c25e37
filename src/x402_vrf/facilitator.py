"""
x402 EVM Facilitator
Verifies and settles exact-scheme payments (EIP-3009 USDC authorizations).

Two interchangeable backends sit behind :class:`Facilitator`: a local one that
verifies in-process and settles through a :class:`~x402_vrf.ledger.Ledger`, and
a remote one that calls a facilitator service over HTTP.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from pydantic import ValidationError

from .codec import PaymentHeaderError, decode_payment_header
from .ledger import Ledger
from .settler import Settler
from .types import (
    InvalidReason,
    PaymentTerms,
    SettleResponse,
    VerifyResponse,
)
from .verifier import verify_payment

logger = structlog.get_logger()


class FacilitatorError(Exception):
    """Raised when a remote facilitator cannot be reached or answers garbage."""


class Facilitator(ABC):
    """Verification and settlement capability consumed by the payment gate."""

    @abstractmethod
    async def verify(self, payment_header: str, terms: PaymentTerms) -> VerifyResponse:
        ...

    @abstractmethod
    async def settle(self, payment_header: str, terms: PaymentTerms) -> SettleResponse:
        ...

    async def close(self):
        pass


class LocalFacilitator(Facilitator):
    """
    In-process facilitator.

    Verification is the pure signature/terms check plus two read-only ledger
    probes (nonce state and payer balance). Settlement repeats the pure check
    before handing the payload to the settler.
    """

    def __init__(
        self,
        ledger: Ledger,
        settler: Optional[Settler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.settler = settler or Settler(ledger)
        self.clock = clock

    async def verify(self, payment_header: str, terms: PaymentTerms) -> VerifyResponse:
        try:
            payload = decode_payment_header(payment_header)
        except PaymentHeaderError as e:
            logger.info("Undecodable payment header", error=str(e))
            return VerifyResponse(is_valid=False, invalid_reason=InvalidReason.INVALID_PAYLOAD.value)

        result = verify_payment(payload, terms, now=int(self.clock()))
        if not result.is_valid:
            logger.info("Payment rejected", payer=payload.payer, reason=result.invalid_reason)
            return result

        authorization = payload.payload.authorization
        try:
            if await self.ledger.authorization_state(authorization.from_, authorization.nonce):
                return VerifyResponse(is_valid=False, invalid_reason=InvalidReason.NONCE_ALREADY_USED.value)
            if await self.ledger.balance_of(authorization.from_) < int(authorization.value):
                return VerifyResponse(is_valid=False, invalid_reason=InvalidReason.INSUFFICIENT_FUNDS.value)
        except Exception as e:
            logger.error("Ledger lookup during verification failed", error=str(e))
            return VerifyResponse(is_valid=False, invalid_reason=str(e))

        logger.info("Payment verified successfully", payer=payload.payer)
        return VerifyResponse(is_valid=True)

    async def settle(self, payment_header: str, terms: PaymentTerms) -> SettleResponse:
        try:
            payload = decode_payment_header(payment_header)
        except PaymentHeaderError as e:
            return SettleResponse(success=False, error=f"Verification failed: {e}")

        verify_result = verify_payment(payload, terms, now=int(self.clock()))
        if not verify_result.is_valid:
            return SettleResponse(
                success=False,
                error=f"Verification failed: {verify_result.invalid_reason}",
                network_id=payload.network_id,
                payer=payload.payer,
            )

        return await self.settler.settle(payload)

    async def close(self):
        await self.ledger.close()


class RemoteFacilitator(Facilitator):
    """Client for a facilitator service exposing ``POST /verify`` and ``POST /settle``."""

    def __init__(
        self,
        url: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.url = url.rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, path: str, payment_header: str, terms: PaymentTerms) -> Dict[str, Any]:
        url = f"{self.url}{path}"
        body = {"payload": payment_header, "details": terms.model_dump(by_alias=True)}
        try:
            response = await self.http_client.post(url, json=body)
        except httpx.HTTPError as e:
            raise FacilitatorError(f"Facilitator call to {url} failed: {e}") from e
        if response.status_code >= 400:
            raise FacilitatorError(
                f"Facilitator responded with {response.status_code}: {response.text}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise FacilitatorError(
                f"Failed to parse JSON from facilitator at {url}: {response.text}"
            ) from e

    async def verify(self, payment_header: str, terms: PaymentTerms) -> VerifyResponse:
        logger.info("Verifying payment with facilitator", url=self.url)
        data = await self._post("/verify", payment_header, terms)
        try:
            return VerifyResponse.model_validate(data)
        except ValidationError as e:
            raise FacilitatorError(f"Unexpected /verify response: {data}") from e

    async def settle(self, payment_header: str, terms: PaymentTerms) -> SettleResponse:
        logger.info("Settling payment with facilitator", url=self.url)
        data = await self._post("/settle", payment_header, terms)
        try:
            return SettleResponse.model_validate(data)
        except ValidationError as e:
            raise FacilitatorError(f"Unexpected /settle response: {data}") from e

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()
