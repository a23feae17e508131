"""
ledgerscan settings.

Loads configuration from environment variables (prefix ``LEDGERSCAN_``) or a
``.env`` file using pydantic-settings. The engine itself never reads
settings; callers build a ScanTuning from them.
"""

from __future__ import annotations

from eth_utils import is_address
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .application.use_cases import ScanTuning


class Settings(BaseSettings):
    """Scanner settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGERSCAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ledger RPC
    rpc_url: str | None = None
    rpc_timeout_s: float = Field(20.0, gt=0)
    rpc_max_connections: int = Field(64, gt=0)
    rpc_max_retries: int = Field(3, ge=1)

    # Token contract
    token_address: str | None = None
    deployment_block: int = Field(0, ge=0)
    token_decimals: int | None = Field(None, ge=0, le=255)  # fetched from the contract when unset

    # Reverse/bounded scan
    bounded_chunk_size: int = Field(50_000, gt=0)
    bounded_concurrency: int = Field(15, gt=0)
    default_limit: int = Field(10, gt=0)

    # Forward/exhaustive scan
    exhaustive_chunk_size: int = Field(5_000, gt=0)
    exhaustive_pause_s: float = Field(0.1, ge=0)
    single_shot_max_span: int = Field(100_000, ge=0)

    # Range-too-large recovery
    min_chunk_size: int = Field(16, gt=0)
    max_shrink_steps: int = Field(6, ge=0)
    timestamp_concurrency: int = Field(16, gt=0)

    log_level: str = "INFO"

    @field_validator("token_address")
    @classmethod
    def validate_token_address(cls, v: str | None) -> str | None:
        """Accept only 0x-prefixed 20-byte hex addresses."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not is_address(v):
            raise ValueError(f"Invalid token address: {v}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    def tuning(self) -> ScanTuning:
        return ScanTuning(
            bounded_chunk_size=self.bounded_chunk_size,
            bounded_concurrency=self.bounded_concurrency,
            default_limit=self.default_limit,
            exhaustive_chunk_size=self.exhaustive_chunk_size,
            exhaustive_pause_s=self.exhaustive_pause_s,
            single_shot_max_span=self.single_shot_max_span,
            min_chunk_size=self.min_chunk_size,
            max_shrink_steps=self.max_shrink_steps,
            timestamp_concurrency=self.timestamp_concurrency,
        )
