"""
Payment gate for the protected mint endpoint.

One call to :meth:`PaymentGate.handle` walks a single inbound request through
challenge → verify → trigger → settle:

    NO_PAYMENT → CHALLENGED
    PAYMENT_PRESENTED → MALFORMED
    PAYMENT_PRESENTED → VERIFYING → REJECTED | VERIFY_ERROR
    VERIFYING → VERIFIED → TRIGGER_FAILED
    VERIFIED → ACTION_TRIGGERED → SETTLING → SETTLED | SETTLEMENT_FAILED

Settlement is only reached after a successful verification and a successful
trigger. Once verification passes, trigger and settlement run to completion
even if the caller goes away.
"""

import asyncio
import base64
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

import structlog

from .bridge import OracleBridge
from .codec import PaymentHeaderError, decode_payment_header
from .config import Settings
from .facilitator import Facilitator
from .types import (
    GatedActionRequest,
    InvalidReason,
    PaymentHeaderPayload,
    PaymentRequiredResponse,
    PaymentTerms,
    Scheme,
    SettleResponse,
)

logger = structlog.get_logger()


class GateState(str, Enum):
    NO_PAYMENT = "NoPayment"
    CHALLENGED = "Challenged"
    PAYMENT_PRESENTED = "PaymentPresented"
    MALFORMED = "Malformed"
    VERIFYING = "Verifying"
    VERIFY_ERROR = "VerifyError"
    REJECTED = "Rejected"
    VERIFIED = "Verified"
    TRIGGER_FAILED = "TriggerFailed"
    ACTION_TRIGGERED = "ActionTriggered"
    SETTLING = "Settling"
    SETTLED = "Settled"
    SETTLEMENT_FAILED = "SettlementFailed"


@dataclass
class GateResponse:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    trace: List[GateState] = field(default_factory=list)

    @property
    def state(self) -> GateState:
        return self.trace[-1]


@dataclass
class ReconciliationEntry:
    """A triggered action whose payment was not collected."""
    request_id: Optional[str]
    payer: str
    error: Optional[str]
    mint_tx_hash: Optional[str] = None
    recorded_at: float = field(default_factory=time.time)


@dataclass
class _PaidOutcome:
    action: Optional[GatedActionRequest] = None
    settlement: Optional[SettleResponse] = None
    trigger_error: Optional[str] = None


class ReconciliationLog:
    """
    Actions started without their payment being collected.

    Keeps the newest ``capacity`` entries; every entry is also logged at error
    level, so evicted ones remain in the log stream.
    """

    def __init__(self, capacity: int = 10_000):
        self.entries: Deque[ReconciliationEntry] = deque(maxlen=capacity)

    def record(self, entry: ReconciliationEntry):
        if len(self.entries) == self.entries.maxlen:
            logger.warning("Reconciliation log full, evicting oldest entry", evicted=self.entries[0].request_id)
        self.entries.append(entry)


def build_payment_terms(settings: Settings) -> PaymentTerms:
    """Payment details advertised for the mint resource."""
    return PaymentTerms(
        scheme=Scheme.EXACT.value,
        network_id=settings.network_id,
        max_amount_required=str(settings.required_payment),
        resource=settings.resource_url,
        description=settings.resource_description,
        mime_type="application/json",
        output_schema=None,
        pay_to_address=settings.pay_to_address,
        required_deadline_seconds=settings.required_deadline_seconds,
        usdc_address=settings.usdc_address,
        extra={"name": settings.usdc_name, "version": settings.usdc_version},
    )


class PaymentGate:
    """Orchestrates the x402 protocol for the protected mint action."""

    def __init__(
        self,
        terms: PaymentTerms,
        facilitator: Facilitator,
        bridge: OracleBridge,
        reconciliation: Optional[ReconciliationLog] = None,
    ):
        self.terms = terms
        self.facilitator = facilitator
        self.bridge = bridge
        self.reconciliation = reconciliation or ReconciliationLog()
        self._in_flight: Set[asyncio.Task] = set()

    def _payment_required(self, trace: List[GateState], error: str, details: Optional[str] = None) -> GateResponse:
        body = PaymentRequiredResponse(
            payment_details=self.terms,
            error=error,
            details=details,
        ).model_dump(by_alias=True)
        return GateResponse(status_code=402, body=body, trace=trace)

    async def handle(self, x_payment: Optional[str]) -> GateResponse:
        if not x_payment:
            trace = [GateState.NO_PAYMENT, GateState.CHALLENGED]
            logger.info("No X-PAYMENT header found, issuing challenge", resource=self.terms.resource)
            return self._payment_required(trace, "Payment required")

        trace = [GateState.PAYMENT_PRESENTED]
        try:
            payload = decode_payment_header(x_payment)
        except PaymentHeaderError as e:
            trace.append(GateState.MALFORMED)
            logger.warning("Error decoding X-PAYMENT header", error=str(e))
            return GateResponse(
                status_code=400,
                body={"error": "Invalid payment header format.", "details": str(e)},
                trace=trace,
            )

        trace.append(GateState.VERIFYING)
        try:
            verification = await self.facilitator.verify(x_payment, self.terms)
        except Exception as e:
            trace.append(GateState.VERIFY_ERROR)
            logger.error("Facilitator verification call failed", error=str(e))
            return GateResponse(
                status_code=500,
                body={"error": "Facilitator verification call failed."},
                trace=trace,
            )
        if not verification.is_valid:
            trace.append(GateState.REJECTED)
            logger.info("Payment verification failed", payer=payload.payer, reason=verification.invalid_reason)
            return self._payment_required(
                trace,
                "Payment verification failed.",
                verification.invalid_reason or "Unknown",
            )
        authorization = payload.payload.authorization
        if not self.bridge.store.claim_authorization(authorization.from_, authorization.nonce):
            trace.append(GateState.REJECTED)
            logger.warning("Payment authorization already claimed", payer=payload.payer, nonce=authorization.nonce)
            return self._payment_required(
                trace,
                "Payment verification failed.",
                InvalidReason.NONCE_ALREADY_USED.value,
            )
        trace.append(GateState.VERIFIED)

        task = asyncio.ensure_future(self._trigger_and_settle(x_payment, payload, trace))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        try:
            outcome = await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(
                "Caller went away after verification; mint and settlement continue",
                payer=payload.payer,
            )
            raise

        if outcome.trigger_error is not None:
            return GateResponse(
                status_code=500,
                body={"error": "Failed to initiate NFT minting.", "details": outcome.trigger_error},
                trace=trace,
            )

        action, settlement = outcome.action, outcome.settlement
        payment_response = base64.b64encode(
            settlement.model_dump_json(by_alias=True).encode()
        ).decode()
        return GateResponse(
            status_code=200,
            body={
                "message": "NFT mint request initiated successfully.",
                "nftRequestId": action.request_id,
                "nftMintTxHash": action.tx_hash,
                "settlement": settlement.model_dump(by_alias=True),
            },
            headers={"X-PAYMENT-RESPONSE": payment_response},
            trace=trace,
        )

    async def _trigger_and_settle(
        self,
        x_payment: str,
        payload: PaymentHeaderPayload,
        trace: List[GateState],
    ) -> "_PaidOutcome":
        beneficiary = payload.payer
        try:
            action = await self.bridge.submit(beneficiary)
        except Exception as e:
            trace.append(GateState.TRIGGER_FAILED)
            authorization = payload.payload.authorization
            self.bridge.store.release_authorization(authorization.from_, authorization.nonce)
            logger.error("Failed to initiate NFT minting", beneficiary=beneficiary, error=str(e))
            broadcast_tx = getattr(e, "tx_hash", None)
            if broadcast_tx is not None:
                self.reconciliation.record(
                    ReconciliationEntry(
                        request_id=None,
                        payer=beneficiary,
                        error=str(e),
                        mint_tx_hash=broadcast_tx,
                    )
                )
            return _PaidOutcome(trigger_error=str(e))
        trace.append(GateState.ACTION_TRIGGERED)

        trace.append(GateState.SETTLING)
        try:
            settlement = await self.facilitator.settle(x_payment, self.terms)
        except Exception as e:
            logger.error("Facilitator settlement call failed", request_id=action.request_id, error=str(e))
            settlement = SettleResponse(
                success=False,
                error=f"Facilitator settlement call failed: {e}",
                network_id=payload.network_id,
                payer=beneficiary,
            )

        if settlement.success:
            trace.append(GateState.SETTLED)
            logger.info("Payment collected", request_id=action.request_id, tx_hash=settlement.tx_hash)
        else:
            trace.append(GateState.SETTLEMENT_FAILED)
            logger.error(
                "Settlement failed after mint was triggered",
                request_id=action.request_id,
                payer=beneficiary,
                error=settlement.error,
                reconciliation_required=True,
            )
            self.reconciliation.record(
                ReconciliationEntry(
                    request_id=action.request_id,
                    payer=beneficiary,
                    error=settlement.error,
                    mint_tx_hash=action.tx_hash,
                )
            )
        return _PaidOutcome(action=action, settlement=settlement)

    async def wait_for_in_flight(self):
        """Wait for mint/settlement work still running after its caller left."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
