"""Settings loader for the confidential portfolio analyzer."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ZERO_ADDRESS = "0x" + "0" * 40


def _validate_address(value: Optional[str], name: str) -> Optional[str]:
    if value is None:
        return value
    candidate = value.strip()
    if not candidate.startswith("0x") or len(candidate) != 42:
        raise ValueError(f"{name} must be a 42-character hex string")
    if not all(ch in "0123456789abcdef" for ch in candidate[2:].lower()):
        raise ValueError(f"{name} must be a valid hex string")
    return candidate


class AnalyzerSettings(BaseSettings):
    contract_address: str = Field(
        default="0x844a256728c380a1825FbEEbE5cb01c72bac971A",
        env="ANALYZER_CONTRACT_ADDRESS",
    )
    chain_id: int = Field(default=11155111, env="ANALYZER_CHAIN_ID")
    decryption_verifying_contract: str = Field(
        default="0x5d8bd78e2ea6bbe41f26dfe9fdaeaa349e077478",
        env="ANALYZER_DECRYPTION_VERIFYING_CONTRACT",
    )
    confidential_protocol_id: int = Field(default=10001, env="ANALYZER_CONFIDENTIAL_PROTOCOL_ID")

    max_assets: int = Field(default=10, env="ANALYZER_MAX_ASSETS")
    decryption_duration_days: int = Field(default=365, env="ANALYZER_DECRYPTION_DURATION_DAYS")

    coprocessor_secret: Optional[str] = Field(default=None, env="ANALYZER_COPROCESSOR_SECRET")

    data_dir: Path = Field(default=Path("/app/data"), env="ANALYZER_DATA_DIR")
    persist_state: bool = Field(default=False, env="ANALYZER_PERSIST_STATE")
    portfolios_path: Optional[Path] = Field(default=None, env="ANALYZER_PORTFOLIOS_PATH")
    thresholds_path: Optional[Path] = Field(default=None, env="ANALYZER_THRESHOLDS_PATH")
    alerts_path: Optional[Path] = Field(default=None, env="ANALYZER_ALERTS_PATH")
    events_journal_path: Optional[Path] = Field(default=None, env="ANALYZER_EVENTS_JOURNAL_PATH")

    api_host: str = Field(default="0.0.0.0", env="ANALYZER_API_HOST")
    api_port: int = Field(default=8082, env="ANALYZER_API_PORT")
    api_root_path: str = Field(default="", env="ANALYZER_API_ROOT_PATH")

    model_config = SettingsConfigDict(
        env_prefix="ANALYZER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("contract_address")
    @classmethod
    def validate_contract_address(cls, value: str) -> str:
        return _validate_address(value, "ANALYZER_CONTRACT_ADDRESS")

    @field_validator("decryption_verifying_contract")
    @classmethod
    def validate_verifying_contract(cls, value: str) -> str:
        return _validate_address(value, "ANALYZER_DECRYPTION_VERIFYING_CONTRACT")

    @field_validator("coprocessor_secret")
    @classmethod
    def validate_coprocessor_secret(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        candidate = value.strip()
        if candidate.startswith("0x"):
            candidate = candidate[2:]
        try:
            decoded = bytes.fromhex(candidate)
        except ValueError as exc:
            raise ValueError("ANALYZER_COPROCESSOR_SECRET must be hex") from exc
        if len(decoded) != 32:
            raise ValueError("ANALYZER_COPROCESSOR_SECRET must be 32 bytes")
        return "0x" + candidate.lower()

    @field_validator(
        "chain_id",
        "confidential_protocol_id",
        "max_assets",
        "decryption_duration_days",
        "api_port",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @model_validator(mode="after")
    def validate_limits(self) -> "AnalyzerSettings":
        if self.max_assets > 255:
            raise ValueError("ANALYZER_MAX_ASSETS must fit in a uint8")
        if self.decryption_duration_days > 365:
            raise ValueError("ANALYZER_DECRYPTION_DURATION_DAYS cannot exceed 365")
        if self.contract_address.lower() == ZERO_ADDRESS:
            raise ValueError("ANALYZER_CONTRACT_ADDRESS must not be the zero address")
        return self

    def secret_bytes(self) -> Optional[bytes]:
        if not self.coprocessor_secret:
            return None
        return bytes.fromhex(self.coprocessor_secret[2:])

    def store_path(self, name: str) -> Optional[Path]:
        """Resolve a persistence path; None keeps that store in memory."""
        explicit = getattr(self, f"{name}_path", None)
        if explicit is not None:
            return Path(explicit)
        if not self.persist_state:
            return None
        return self.data_dir / f"{name}.json"


settings = AnalyzerSettings()
