"""
x402 Protocol Types for the exact EVM scheme (EIP-3009 authorizations)
Based on: https://github.com/coinbase/x402/blob/main/specs/schemes/exact/scheme_exact_evm.md
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from enum import Enum


ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
UINT_PATTERN = r"^[0-9]+$"


class Scheme(str, Enum):
    """Supported payment schemes."""
    EXACT = "exact"


class InvalidReason(str, Enum):
    """Machine-readable reasons a payment payload is rejected."""
    INVALID_SCHEME = "invalid_scheme"
    INVALID_NETWORK = "invalid_network"
    INVALID_RESOURCE = "invalid_resource"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    INVALID_PAYEE = "invalid_payee"
    NOT_YET_VALID = "authorization_not_yet_valid"
    EXPIRED = "authorization_expired"
    WINDOW_TOO_LONG = "authorization_window_too_long"
    INVALID_SIGNATURE = "invalid_signature"
    NONCE_ALREADY_USED = "nonce_already_used"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_PAYLOAD = "invalid_payload"


# ==============================================
# Payment Terms (Server → Client)
# ==============================================

class PaymentTerms(BaseModel):
    """Payment details returned in a 402 response."""
    scheme: str = Field(default=Scheme.EXACT.value)
    network_id: str = Field(..., alias="networkId", description="EVM chain id as a string")
    max_amount_required: str = Field(..., alias="maxAmountRequired", pattern=UINT_PATTERN, description="Amount in atomic units (USDC has 6 decimals)")
    resource: str = Field(..., description="URL of the resource being paid for")
    description: str = Field(default="", description="Human-readable description")
    mime_type: str = Field(default="application/json", alias="mimeType")
    output_schema: Optional[Any] = Field(default=None, alias="outputSchema")
    pay_to_address: str = Field(..., alias="payToAddress", pattern=ADDRESS_PATTERN, description="Merchant wallet address")
    required_deadline_seconds: int = Field(default=60, alias="requiredDeadlineSeconds")
    usdc_address: str = Field(..., alias="usdcAddress", pattern=ADDRESS_PATTERN, description="Token contract address")
    extra: Optional[Dict[str, Any]] = Field(default=None, description="EIP-712 domain name/version of the token")

    class Config:
        populate_by_name = True
        frozen = True

    @property
    def amount_required(self) -> int:
        return int(self.max_amount_required)


class PaymentRequiredResponse(BaseModel):
    """Full 402 response body."""
    payment_details: PaymentTerms = Field(..., alias="paymentDetails")
    error: str = Field(default="")
    details: Optional[str] = None

    class Config:
        populate_by_name = True


# ==============================================
# Payment Payload (Client → Server)
# ==============================================

class Authorization(BaseModel):
    """EIP-3009 TransferWithAuthorization fields signed by the payer."""
    from_: str = Field(..., alias="from", pattern=ADDRESS_PATTERN)
    to: str = Field(..., pattern=ADDRESS_PATTERN)
    value: str = Field(..., pattern=UINT_PATTERN)
    valid_after: str = Field(..., alias="validAfter", pattern=UINT_PATTERN)
    valid_before: str = Field(..., alias="validBefore", pattern=UINT_PATTERN)
    nonce: str = Field(..., pattern=r"^0x[0-9a-fA-F]{64}$")

    class Config:
        populate_by_name = True
        frozen = True


class ExactEvmPayload(BaseModel):
    """Signature plus the authorization it signs."""
    signature: str = Field(..., pattern=r"^0x[0-9a-fA-F]+$")
    authorization: Authorization

    class Config:
        frozen = True


class PaymentHeaderPayload(BaseModel):
    """X-PAYMENT header payload (decoded from base64)."""
    x402_version: int = Field(default=1, alias="x402Version")
    scheme: str = Field(default=Scheme.EXACT.value)
    network_id: str = Field(..., alias="networkId")
    payload: ExactEvmPayload
    resource: str

    class Config:
        populate_by_name = True
        frozen = True

    @property
    def payer(self) -> str:
        return self.payload.authorization.from_


# ==============================================
# Facilitator API Types
# ==============================================

class VerifyRequest(BaseModel):
    """Request to verify a payment."""
    payload: str = Field(..., description="Base64-encoded X-PAYMENT header")
    details: PaymentTerms


class VerifyResponse(BaseModel):
    """Response from payment verification."""
    is_valid: bool = Field(..., alias="isValid")
    invalid_reason: Optional[str] = Field(default=None, alias="invalidReason")

    class Config:
        populate_by_name = True


class SettleRequest(BaseModel):
    """Request to settle a payment on-chain."""
    payload: str = Field(..., description="Base64-encoded X-PAYMENT header")
    details: PaymentTerms


class SettleResponse(BaseModel):
    """Settlement receipt: txHash present iff success, error present iff failure."""
    success: bool
    error: Optional[str] = None
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    network_id: Optional[str] = Field(default=None, alias="networkId")
    payer: Optional[str] = None

    class Config:
        populate_by_name = True


class SupportedKind(BaseModel):
    """Supported scheme/network pair."""
    scheme: str
    network_id: str = Field(..., alias="networkId")

    class Config:
        populate_by_name = True


class SupportedResponse(BaseModel):
    """Response listing supported payment kinds."""
    kinds: List[SupportedKind]


# ==============================================
# Gated Action (randomness request / fulfillment)
# ==============================================

class FulfillmentStatus(str, Enum):
    """Outcome of applying a fulfillment callback."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"


class GatedActionRequest(BaseModel):
    """One triggered randomness request and, once fulfilled, its result."""
    request_id: str = Field(..., alias="requestId")
    beneficiary: str
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    fulfilled: bool = False
    random_words: Optional[List[int]] = Field(default=None, alias="randomWords")
    outcome_index: Optional[int] = Field(default=None, alias="outcomeIndex")
    outcome_uri: Optional[str] = Field(default=None, alias="outcomeUri")
    token_id: Optional[int] = Field(default=None, alias="tokenId")

    class Config:
        populate_by_name = True


class FulfillmentEvent(BaseModel):
    """Out-of-band fulfillment delivered by the oracle."""
    request_id: str = Field(..., alias="requestId")
    random_words: List[int] = Field(..., alias="randomWords", min_length=1)

    class Config:
        populate_by_name = True
