"""
x402 VRF Gate Configuration
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4023)
    debug: bool = Field(default=False)

    # EVM Network (Base Sepolia)
    network_id: str = Field(default="84532")
    rpc_url: str = Field(default="https://sepolia.base.org")

    # USDC Token (Base Sepolia)
    usdc_address: str = Field(default="0x036CbD53842c5426634e7929541eC2318f3dCF7e")
    usdc_name: str = Field(default="USDC")
    usdc_version: str = Field(default="2")
    usdc_decimals: int = Field(default=6)

    # Resource server wallet (pays for settlement gas and the VRF request)
    resource_wallet_private_key: str = Field(default="")

    # Protected resource
    pay_to_address: str = Field(default="0x87002564F1C7b8F51e96CA7D545e43402BF0b4Ab")
    required_payment: int = Field(default=50000)
    required_deadline_seconds: int = Field(default=60)
    resource_url: str = Field(default="http://localhost:4023/request-mint")
    resource_description: str = Field(default="Request to mint a VRF NFT")

    # Facilitator
    facilitator_mode: str = Field(default="local")  # local | remote
    facilitator_url: str = Field(default="http://localhost:4020")
    facilitator_timeout_seconds: float = Field(default=30.0)

    # Ledger
    ledger_backend: str = Field(default="memory")  # memory | web3
    settlement_timeout_seconds: float = Field(default=30.0)
    memory_ledger_starting_balance: int = Field(default=10_000_000)

    # Randomness oracle / NFT contract
    oracle_backend: str = Field(default="simulated")  # simulated | web3
    nft_contract_address: str = Field(default="0xcD8841f9a8Dbc483386fD80ab6E9FD9656Da39A2")
    mint_value_wei: int = Field(default=10**16)
    oracle_poll_interval_seconds: float = Field(default=5.0)
    simulated_fulfillment_delay_seconds: float = Field(default=2.0)
    simulated_oracle_funding_wei: int = Field(default=10**18)
    outcome_uris: List[str] = Field(
        default=[
            "ipfs://vrf-nft/common.json",
            "ipfs://vrf-nft/rare.json",
            "ipfs://vrf-nft/legendary.json",
        ]
    )
    fulfilled_retention: int = Field(default=10_000)

    # Logging
    log_level: str = Field(default="INFO")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
