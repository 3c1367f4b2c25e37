"""
Process-wide service instances: ledger, facilitators, oracle bridge and gate.

Backends are picked from settings, so callers never change when switching
between the in-memory simulation and a real chain.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from .bridge import CorrelationStore, OracleBridge
from .config import Settings, get_settings
from .eip3009 import token_domain
from .facilitator import Facilitator, LocalFacilitator, RemoteFacilitator
from .gate import PaymentGate, build_payment_terms
from .ledger import InMemoryLedger, Ledger, Web3Ledger
from .oracle import RandomnessOracle, SimulatedVrfOracle, Web3VrfOracle
from .settler import Settler
from .wallet import ResourceWallet

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    ledger: Ledger
    local_facilitator: LocalFacilitator
    gate: PaymentGate
    bridge: OracleBridge
    wallet: Optional[ResourceWallet] = None

    async def close(self):
        await self.bridge.close()
        await self.gate.wait_for_in_flight()
        if self.gate.facilitator is not self.local_facilitator:
            await self.gate.facilitator.close()
        await self.local_facilitator.close()
        if self.wallet is not None:
            await self.wallet.close()


def _build_ledger(settings: Settings, wallet: Optional[ResourceWallet]) -> Ledger:
    if settings.ledger_backend == "memory":
        return InMemoryLedger(
            token_domain(
                int(settings.network_id),
                settings.usdc_address,
                settings.usdc_name,
                settings.usdc_version,
            ),
            starting_balance=settings.memory_ledger_starting_balance,
        )
    if settings.ledger_backend == "web3":
        return Web3Ledger(wallet, settings.usdc_address, receipt_timeout=settings.settlement_timeout_seconds)
    raise ValueError(f"Unknown ledger backend {settings.ledger_backend!r}")


def _build_oracle(settings: Settings, wallet: Optional[ResourceWallet]) -> RandomnessOracle:
    if settings.oracle_backend == "simulated":
        return SimulatedVrfOracle(
            funding_wei=settings.simulated_oracle_funding_wei,
            request_fee_wei=settings.mint_value_wei,
            fulfillment_delay=settings.simulated_fulfillment_delay_seconds,
        )
    if settings.oracle_backend == "web3":
        return Web3VrfOracle(
            wallet,
            settings.nft_contract_address,
            mint_value_wei=settings.mint_value_wei,
            poll_interval=settings.oracle_poll_interval_seconds,
        )
    raise ValueError(f"Unknown oracle backend {settings.oracle_backend!r}")


def build_services(settings: Settings) -> Services:
    wallet = None
    if "web3" in (settings.ledger_backend, settings.oracle_backend):
        wallet = ResourceWallet(settings.rpc_url, settings.resource_wallet_private_key)

    ledger = _build_ledger(settings, wallet)
    local_facilitator = LocalFacilitator(
        ledger,
        Settler(ledger, timeout_seconds=settings.settlement_timeout_seconds),
    )

    if settings.facilitator_mode == "local":
        facilitator: Facilitator = local_facilitator
    elif settings.facilitator_mode == "remote":
        facilitator = RemoteFacilitator(
            settings.facilitator_url,
            timeout=settings.facilitator_timeout_seconds,
        )
    else:
        raise ValueError(f"Unknown facilitator mode {settings.facilitator_mode!r}")

    bridge = OracleBridge(
        _build_oracle(settings, wallet),
        settings.outcome_uris,
        CorrelationStore(fulfilled_retention=settings.fulfilled_retention),
    )
    gate = PaymentGate(build_payment_terms(settings), facilitator, bridge)
    return Services(
        settings=settings,
        ledger=ledger,
        local_facilitator=local_facilitator,
        gate=gate,
        bridge=bridge,
        wallet=wallet,
    )


# Global service instance
_services: Optional[Services] = None


async def get_services() -> Services:
    """Get or create the global services, starting the fulfillment consumer."""
    global _services
    if _services is None:
        settings = get_settings()
        services = build_services(settings)
        await services.bridge.start()
        _services = services
        logger.info(
            "Services initialized",
            facilitator=settings.facilitator_mode,
            ledger=settings.ledger_backend,
            oracle=settings.oracle_backend,
            wallet=services.wallet.address if services.wallet else None,
        )
    return _services


async def get_gate() -> PaymentGate:
    return (await get_services()).gate


async def get_facilitator() -> LocalFacilitator:
    return (await get_services()).local_facilitator


async def get_bridge() -> OracleBridge:
    return (await get_services()).bridge


async def close_services():
    """Close the global services."""
    global _services
    if _services:
        await _services.close()
        _services = None
