"""Configuration management for the staking backend."""

import os
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stakestore.config.encryption import (
    DEFAULT_SSH_PRIVATE_KEY,
    decrypt_signer_key,
    normalize_signer_key,
)

PENDLE_ROUTER_V4 = "0x888888888889758F76e7103c6CbF23ABbF58F946"


class StakeStoreConfig(BaseSettings):
    """Staking backend configuration."""

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="STAKESTORE_",
    )

    # Signer (custodial hot wallet)
    private_key: str = Field(description="Signer private key without 0x prefix")

    # Chain connection
    rpc_url: str = Field(description="JSON-RPC endpoint of the chain node")
    chain_id: int = Field(default=8453, description="Chain ID (Base by default)")

    # Routing service
    pendle_api_base_url: str = Field(
        default="https://api-v2.pendle.finance/core", description="Pendle hosted API base URL"
    )
    quote_timeout: float = Field(default=10.0, gt=0, description="Routing request timeout (s)")
    enable_aggregator: bool = Field(default=True, description="Allow aggregator routing in quotes")
    default_slippage: float = Field(default=0.01, ge=0.0, le=1.0)

    # Contracts
    router_address: str = Field(
        default=PENDLE_ROUTER_V4, description="Pendle router, the approval spender"
    )
    stake_store_address: Optional[str] = Field(
        default=None, description="StakeStore contract emitting StakeInitiated events"
    )

    # Confirmation
    confirmation_timeout: float = Field(default=180.0, gt=0, description="Receipt wait (s)")
    confirmation_poll_interval: float = Field(default=2.0, gt=0)

    # Gas
    fallback_gas_limit: int = Field(default=10_000_000, gt=21_000)
    gas_price_multiplier: float = Field(default=1.0, gt=0)

    # Retries for idempotent reads
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)

    # Persistence
    db_path: str = Field(default="data/stakes.db", description="SQLite workflow database path")
    markets_file: Optional[str] = Field(
        default=None, description="Optional JSON snapshot of active markets"
    )

    # Concurrency
    max_concurrent_workflows: int = Field(default=5, ge=1, le=50)
    max_queue_size: int = Field(default=100, ge=1)
    holdings_concurrency: int = Field(default=8, ge=1, le=64)

    # Intent listener
    intent_poll_interval: float = Field(default=15.0, gt=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None
    log_json: bool = False

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: str) -> str:
        return normalize_signer_key(v)

    @field_validator("pendle_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


def load_config(
    env_file: Optional[str] = None,
    secrets_file: str = "secrets.age",
    identity_file: str = DEFAULT_SSH_PRIVATE_KEY,
) -> StakeStoreConfig:
    """Load and validate configuration from environment.

    Args:
        env_file: Optional path to .env file. If not provided, uses:
                  1. ENV_FILE environment variable
                  2. Environment-specific file (.env.{ENV})
                  3. Default .env file
        secrets_file: Path to age-encrypted file holding the signer key
        identity_file: Path to SSH private key for decryption

    Environment priority (highest to lowest):
        1. System environment variables
        2. Decrypted secrets.age file (for private_key)
        3. .env file
        4. Default values

    Raises:
        RuntimeError: If the signer key is not in the environment and cannot be decrypted
    """
    if env_file:
        os.environ["ENV_FILE"] = env_file
    elif "ENV_FILE" not in os.environ:
        env = os.getenv("ENV", "development")
        env_specific_file = f".env.{env}"
        if os.path.exists(env_specific_file):
            os.environ["ENV_FILE"] = env_specific_file

    if "STAKESTORE_PRIVATE_KEY" not in os.environ:
        try:
            os.environ["STAKESTORE_PRIVATE_KEY"] = decrypt_signer_key(secrets_file, identity_file)
        except (FileNotFoundError, ValueError) as e:
            raise RuntimeError(f"Failed to load private key from encrypted file: {e}") from e

    return StakeStoreConfig(_env_file=os.environ.get("ENV_FILE", ".env"))
