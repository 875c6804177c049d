"""Settings loader for the settlement backend."""
from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_KDF_ITERATIONS = 100_000


class SettlementSettings(BaseSettings):
    eth_rpc_url: str = Field(default="https://sepolia.base.org")
    eth_chain_id: int = Field(default=84532)

    ticket_contract_address: Optional[str] = Field(default=None)
    token_contract_address: Optional[str] = Field(default=None)
    token_decimals: int = Field(default=18)
    platform_fee_bps: int = Field(default=50)
    min_gas_balance_eth: Decimal = Field(default=Decimal("0.001"))

    rpc_timeout_seconds: float = Field(default=10.0)
    rpc_max_retries: int = Field(default=3)
    rpc_backoff_seconds: float = Field(default=0.5)

    sync_interval_seconds: int = Field(default=60)
    sync_confirmations: int = Field(default=0)
    sync_max_block_span: Optional[int] = Field(default=None)
    sync_lease_seconds: int = Field(default=300)

    wallet_kdf_iterations: int = Field(default=MIN_KDF_ITERATIONS)
    wallet_export_rate_limit: int = Field(default=5)
    wallet_export_rate_window_seconds: int = Field(default=3600)

    payment_dry_run: bool = Field(default=True)

    store_path: Path = Field(default=Path("/app/data/settlement.json"))
    audit_log_path: Path = Field(default=Path("/app/data/audit/wallet.log"))

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8082)
    api_root_path: str = Field(default="")
    api_admin_token: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ticket_contract_address", "token_contract_address")
    @classmethod
    def validate_contract_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        if not candidate:
            return None
        if not candidate.startswith("0x") or len(candidate) != 42:
            raise ValueError("contract addresses must be 42-character hex strings")
        if not all(ch in "0123456789abcdef" for ch in candidate[2:].lower()):
            raise ValueError("contract addresses must be valid hex strings")
        return candidate

    @field_validator("min_gas_balance_eth", mode="before")
    def coerce_decimal(cls, value):  # type: ignore[override]
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except Exception as exc:
            raise ValueError(f"Invalid decimal value: {value}") from exc

    @field_validator(
        "eth_chain_id",
        "api_port",
        "rpc_max_retries",
        "sync_interval_seconds",
        "sync_lease_seconds",
        "wallet_export_rate_limit",
        "wallet_export_rate_window_seconds",
    )
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("sync_max_block_span")
    def validate_block_span(cls, value: Optional[int]) -> Optional[int]:
        if value is None:
            return value
        if value <= 0:
            raise ValueError("SYNC_MAX_BLOCK_SPAN must be positive")
        return value

    @field_validator("sync_confirmations", "token_decimals")
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Value must not be negative")
        return value

    @field_validator("platform_fee_bps")
    def validate_fee_bps(cls, value: int) -> int:
        if value < 0 or value > 10_000:
            raise ValueError("PLATFORM_FEE_BPS must be between 0 and 10000")
        return value

    @field_validator("wallet_kdf_iterations")
    def validate_kdf_iterations(cls, value: int) -> int:
        if value < MIN_KDF_ITERATIONS:
            raise ValueError(f"WALLET_KDF_ITERATIONS must be at least {MIN_KDF_ITERATIONS}")
        return value

    @field_validator("rpc_timeout_seconds", "rpc_backoff_seconds")
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @model_validator(mode="after")
    def validate_dry_run_requirements(self) -> "SettlementSettings":
        if not self.payment_dry_run and not self.ticket_contract_address:
            raise ValueError("TICKET_CONTRACT_ADDRESS must be set when PAYMENT_DRY_RUN is disabled")
        return self


settings = SettlementSettings()
