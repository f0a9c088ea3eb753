from __future__ import annotations

from decimal import Decimal
from enum import StrEnum

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from paysweep.domain.errors import ConfigurationError


class IntakeMode(StrEnum):
    INTERMEDIATE = "intermediate"
    CUSTODY = "custody"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="paysweep_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    ledger_api_url: str = Field(default="https://api.trongrid.io", alias="LEDGER_API_URL")
    ledger_api_key: SecretStr | None = Field(default=None, alias="LEDGER_API_KEY")
    ledger_timeout_seconds: float = Field(default=10.0, alias="LEDGER_TIMEOUT_SECONDS")
    ledger_retry_attempts: int = Field(default=3, alias="LEDGER_RETRY_ATTEMPTS")
    ledger_retry_base_delay_ms: int = Field(default=500, alias="LEDGER_RETRY_BASE_DELAY_MS")
    ledger_retry_max_delay_ms: int = Field(default=4000, alias="LEDGER_RETRY_MAX_DELAY_MS")

    signer_url: str | None = Field(default=None, alias="SIGNER_URL")
    signer_token: SecretStr | None = Field(default=None, alias="SIGNER_TOKEN")

    custody_address: str | None = Field(default=None, alias="CUSTODY_ADDRESS")
    asset_contract_id: str | None = Field(default=None, alias="ASSET_CONTRACT_ID")
    asset_decimals: int = Field(default=6, alias="ASSET_DECIMALS")
    intake_mode: IntakeMode = Field(default=IntakeMode.INTERMEDIATE, alias="INTAKE_MODE")

    cycle_base_interval_seconds: float = Field(default=60.0, alias="CYCLE_BASE_INTERVAL_SECONDS")
    backoff_max_multiplier: int = Field(default=5, alias="BACKOFF_MAX_MULTIPLIER")
    max_consolidation_attempts: int = Field(default=5, alias="MAX_CONSOLIDATION_ATTEMPTS")
    admin_trigger_min_interval_seconds: float = Field(
        default=30.0, alias="ADMIN_TRIGGER_MIN_INTERVAL_SECONDS"
    )

    transfer_poll_interval_seconds: float = Field(default=5.0, alias="TRANSFER_POLL_INTERVAL_SECONDS")
    transfer_poll_max_attempts: int = Field(default=12, alias="TRANSFER_POLL_MAX_ATTEMPTS")
    activation_poll_interval_seconds: float = Field(
        default=5.0, alias="ACTIVATION_POLL_INTERVAL_SECONDS"
    )
    activation_poll_max_attempts: int = Field(default=12, alias="ACTIVATION_POLL_MAX_ATTEMPTS")
    native_poll_interval_seconds: float = Field(default=5.0, alias="NATIVE_POLL_INTERVAL_SECONDS")
    native_poll_max_attempts: int = Field(default=20, alias="NATIVE_POLL_MAX_ATTEMPTS")

    activation_amount_native: Decimal = Field(default=Decimal("5"), alias="ACTIVATION_AMOUNT_NATIVE")
    activation_amount_max_native: Decimal = Field(
        default=Decimal("15"), alias="ACTIVATION_AMOUNT_MAX_NATIVE"
    )
    native_fee_floor: Decimal = Field(default=Decimal("5"), alias="NATIVE_FEE_FLOOR")
    native_top_up_amount: Decimal = Field(default=Decimal("10"), alias="NATIVE_TOP_UP_AMOUNT")
    energy_target: int = Field(default=100_000, alias="ENERGY_TARGET")
    bandwidth_target: int = Field(default=1_000, alias="BANDWIDTH_TARGET")

    watcher_max_lookback_hours: int = Field(default=24, alias="WATCHER_MAX_LOOKBACK_HOURS")
    watcher_overlap_seconds: int = Field(default=30, alias="WATCHER_OVERLAP_SECONDS")
    callback_timeout_seconds: float = Field(default=5.0, alias="CALLBACK_TIMEOUT_SECONDS")

    @field_validator("cycle_base_interval_seconds")
    def validate_base_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("CYCLE_BASE_INTERVAL_SECONDS must be > 0")
        return value

    @field_validator("backoff_max_multiplier", "max_consolidation_attempts")
    def validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("transfer_poll_max_attempts", "activation_poll_max_attempts", "native_poll_max_attempts")
    def validate_poll_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("poll attempts must be >= 1")
        return value

    @field_validator("asset_decimals")
    def validate_asset_decimals(cls, value: int) -> int:
        if not 0 <= value <= 18:
            raise ValueError("ASSET_DECIMALS must be between 0 and 18")
        return value

    @field_validator("custody_address", "asset_contract_id", "signer_url", mode="before")
    def blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    def validate_runtime(self) -> None:
        missing = [
            name
            for name, value in (
                ("CUSTODY_ADDRESS", self.custody_address),
                ("ASSET_CONTRACT_ID", self.asset_contract_id),
                ("SIGNER_URL", self.signer_url),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"missing required settings: {', '.join(missing)}")

