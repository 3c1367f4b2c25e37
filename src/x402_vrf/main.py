"""
x402 VRF Gate - Pay-per-mint API

FastAPI application that sells VRF NFT mint requests behind HTTP 402.
It also serves the facilitator endpoints (/verify, /settle) used by the gate
and accepts out-of-band oracle fulfillments.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from .bridge import OracleBridge
from .config import get_settings
from .facilitator import LocalFacilitator
from .gate import PaymentGate
from .services import close_services, get_bridge, get_facilitator, get_gate, get_services
from .types import (
    FulfillmentEvent,
    SettleRequest,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyRequest,
    VerifyResponse,
)

settings = get_settings()

structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting x402 VRF Gate", port=settings.port)

    try:
        await get_services()
    except ValueError as e:
        logger.warning(
            "Services not configured - protected endpoints will be unavailable",
            error=str(e),
        )

    yield

    # Shutdown
    logger.info("Shutting down x402 VRF Gate")
    await close_services()


app = FastAPI(
    title="x402 VRF Gate",
    description="Pay-per-request VRF NFT minting via HTTP 402",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-PAYMENT-RESPONSE"],
)


@app.exception_handler(404)
async def not_found(request: Request, exc: Exception):
    logger.info("Unhandled path", method=request.method, path=request.url.path)
    return JSONResponse(status_code=404, content={"error": "Not Found"})


# ==============================================
# Health & Info
# ==============================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "x402-vrf-gate",
        "version": "1.0.0",
        "network": settings.network_id,
    }


@app.get("/")
async def root():
    """API information."""
    return {
        "name": "x402 VRF Gate",
        "description": "Pay-per-request VRF NFT minting via HTTP 402",
        "version": "1.0.0",
        "network": settings.network_id,
        "usdc": settings.usdc_address,
        "price": str(settings.required_payment),
        "priceUsdc": settings.required_payment / 10 ** settings.usdc_decimals,
        "docs": "/docs",
        "endpoints": {
            "mint": "POST /request-mint",
            "verify": "POST /verify",
            "settle": "POST /settle",
            "supported": "GET /supported",
            "fulfillments": "POST /oracle/fulfillments",
            "request": "GET /requests/{request_id}",
            "reconciliation": "GET /reconciliation",
        },
    }


# ==============================================
# Protected Endpoint
# ==============================================

@app.post("/request-mint")
async def request_mint(
    x_payment: Optional[str] = Header(None, alias="X-PAYMENT"),
    gate: PaymentGate = Depends(get_gate),
):
    """
    Request a VRF NFT mint.

    1. Request without X-PAYMENT → 402 with payment details
    2. Request with valid X-PAYMENT → mint requested, payment settled, 200
    """
    outcome = await gate.handle(x_payment)
    logger.info("Responding to mint request", status=outcome.status_code, state=outcome.state.value)
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.body,
        headers=outcome.headers,
    )


# ==============================================
# Facilitator Endpoints
# ==============================================

@app.get("/supported", response_model=SupportedResponse)
async def get_supported():
    """Get supported payment scheme/network pairs."""
    return SupportedResponse(
        kinds=[SupportedKind(scheme="exact", network_id=settings.network_id)]
    )


@app.get("/verify")
async def describe_verify():
    return {
        "endpoint": "/verify",
        "description": "POST to verify x402 payments",
        "body": {"payload": "string", "details": "PaymentDetails"},
    }


@app.post("/verify", response_model=VerifyResponse)
async def verify_payment(
    request: VerifyRequest,
    facilitator: LocalFacilitator = Depends(get_facilitator),
):
    """
    Verify a payment payload against payment details.

    Does not move funds.
    """
    try:
        return await facilitator.verify(request.payload, request.details)
    except Exception as e:
        logger.error("Verification failed", error=str(e))
        return VerifyResponse(is_valid=False, invalid_reason=str(e))


@app.get("/settle")
async def describe_settle():
    return {
        "endpoint": "/settle",
        "description": "POST to settle x402 payments",
        "body": {"payload": "string", "details": "PaymentDetails"},
    }


@app.post("/settle", response_model=SettleResponse)
async def settle_payment(
    request: SettleRequest,
    facilitator: LocalFacilitator = Depends(get_facilitator),
):
    """
    Settle a payment on-chain.

    Returns the transaction hash on success.
    """
    try:
        return await facilitator.settle(request.payload, request.details)
    except Exception as e:
        logger.error("Settlement failed", error=str(e))
        return SettleResponse(success=False, error=str(e))


# ==============================================
# Oracle Fulfillments & Request Status
# ==============================================

@app.post("/oracle/fulfillments", status_code=202)
async def receive_fulfillment(
    event: FulfillmentEvent,
    bridge: OracleBridge = Depends(get_bridge),
):
    """Accept a fulfillment delivered out-of-band; it is applied asynchronously."""
    bridge.deliver(event)
    return {"requestId": event.request_id, "queued": True}


@app.get("/requests/{request_id}")
async def get_request(
    request_id: str,
    bridge: OracleBridge = Depends(get_bridge),
):
    """Status of a gated mint request."""
    row = bridge.get(request_id)
    if row is None:
        return JSONResponse(status_code=404, content={"error": f"Unknown request {request_id}"})
    return row.model_dump(by_alias=True)


@app.get("/reconciliation")
async def get_reconciliation(gate: PaymentGate = Depends(get_gate)):
    """Mint requests whose payment could not be collected."""
    return {
        "entries": [
            {
                "requestId": entry.request_id,
                "payer": entry.payer,
                "error": entry.error,
                "mintTxHash": entry.mint_tx_hash,
                "recordedAt": entry.recorded_at,
            }
            for entry in gate.reconciliation.entries
        ]
    }


# ==============================================
# Run with: uvicorn x402_vrf.main:app --reload
# ==============================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "x402_vrf.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
