"""Configuration management with Pydantic Settings and YAML loading."""

from __future__ import annotations

import re
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from balbot.errors import ConfigError
from balbot.models.chain import ChainSide, TrackedAsset
from balbot.utils.retry import BackoffPolicy

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


def _check_address(value: str, field: str) -> str:
    if not _ADDRESS_RE.match(value):
        raise ValueError(f"{field} must be a 0x-prefixed 20-byte hex address")
    return value


class StoreBackend(str, Enum):
    """Where operations are persisted."""

    POSTGRES = "postgres"
    MEMORY = "memory"


# --- Sub-config models ---


class SystemConfig(BaseModel):
    """Top-level system settings."""

    log_level: str = "INFO"
    json_logs: bool = False


class ChainConfig(BaseModel):
    """One tracked chain: RPC endpoint, wallet, token and threshold."""

    name: str
    chain_id: int = Field(gt=0)
    rpc_url: str
    wallet_address: str
    token_address: str
    token_symbol: str
    token_decimals: int = Field(default=18, ge=0, le=77)
    threshold: Decimal = Field(ge=0)
    native_token_address: str = NATIVE_TOKEN_ADDRESS

    @field_validator("wallet_address", "token_address", "native_token_address")
    @classmethod
    def _validate_address(cls, value: str, info: ValidationInfo) -> str:
        return _check_address(value, info.field_name)

    def to_asset(self, side: ChainSide) -> TrackedAsset:
        return TrackedAsset(
            side=side,
            chain_name=self.name,
            wallet_address=self.wallet_address,
            token_address=self.token_address,
            token_symbol=self.token_symbol,
            token_decimals=self.token_decimals,
            threshold=self.threshold,
        )


class ChainsConfig(BaseModel):
    """The two chains kept in balance."""

    chain_a: ChainConfig
    chain_b: ChainConfig

    @model_validator(mode="after")
    def _distinct_chains(self) -> ChainsConfig:
        if self.chain_a.chain_id == self.chain_b.chain_id:
            raise ValueError("chain_a and chain_b must have different chain ids")
        return self

    def for_side(self, side: ChainSide) -> ChainConfig:
        return self.chain_a if side is ChainSide.CHAIN_A else self.chain_b

    def assets(self) -> dict[ChainSide, TrackedAsset]:
        return {side: self.for_side(side).to_asset(side) for side in ChainSide}


class EngineConfig(BaseModel):
    """Scheduler and engine settings."""

    poll_interval_seconds: float = Field(default=60.0, ge=1.0)
    error_retry_seconds: float = Field(default=30.0, ge=0.0)
    min_gas_balance: Decimal = Field(default=Decimal("0.001"), ge=0)
    gas_buffer_pct: int = Field(default=20, ge=0)
    confirmations: int = Field(default=1, ge=1)
    receipt_timeout_seconds: float = Field(default=300.0, gt=0)


class MonitorConfig(BaseModel):
    """Bridge status polling backoff."""

    base_delay_seconds: float = Field(default=10.0, ge=0)
    factor: float = Field(default=1.1, ge=1.0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    max_attempts: int = Field(default=60, ge=1)
    jitter_seconds: float = Field(default=2.0, ge=0)

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.base_delay_seconds,
            factor=self.factor,
            max_delay=self.max_delay_seconds,
            max_attempts=self.max_attempts,
            jitter=self.jitter_seconds,
        )


class AggregatorConfig(BaseModel):
    """Bridge aggregator (Bungee/Socket) settings."""

    base_url: str = "https://api.socket.tech/v2"
    api_key: str = ""
    timeout_seconds: float = 30.0
    bridge_slippage_pct: float = Field(default=1.0, gt=0, lt=100)
    swap_slippage_pct: float = Field(default=0.5, gt=0, lt=100)


class PricingConfig(BaseModel):
    """USD price source settings."""

    coinmarketcap_api_key: str = ""
    coinmarketcap_base_url: str = "https://pro-api.coinmarketcap.com"
    timeout_seconds: float = 10.0
    price_overrides: dict[str, float] = Field(default_factory=dict)

    @field_validator("price_overrides")
    @classmethod
    def _validate_overrides(cls, value: dict[str, float]) -> dict[str, float]:
        for address, price in value.items():
            _check_address(address, "price_overrides key")
            if price <= 0:
                raise ValueError(f"price override for {address} must be positive")
        return value


class TelegramAlertConfig(BaseModel):
    """Telegram alert settings."""

    enabled: bool = False
    chat_id: str = ""
    bot_token: str = ""
    commands_enabled: bool = True

    @model_validator(mode="after")
    def _require_credentials(self) -> TelegramAlertConfig:
        if self.enabled and not (self.chat_id and self.bot_token):
            raise ValueError("telegram alerts need bot_token and chat_id when enabled")
        return self


class AlertsConfig(BaseModel):
    """Alerting settings."""

    telegram: TelegramAlertConfig = Field(default_factory=TelegramAlertConfig)


class PostgresConfig(BaseModel):
    """PostgreSQL database settings."""

    host: str = "localhost"
    port: int = 5432
    database: str = "balbot"
    user: str = "balbot"
    password: str = ""
    min_pool_size: int = 1
    max_pool_size: int = 5

    @property
    def dsn(self) -> str:
        """Build PostgreSQL DSN string."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class DatabaseConfig(BaseModel):
    """Database settings."""

    backend: StoreBackend = StoreBackend.POSTGRES
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)


class MetricsConfig(BaseModel):
    """Prometheus exporter settings."""

    enabled: bool = False
    port: int = 9090


# --- Main config ---


class AppConfig(BaseSettings):
    """Application configuration.

    Loads from YAML file, with environment variable overrides.
    """

    model_config = SettingsConfigDict(
        env_prefix="BALBOT_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Environment variables override YAML (init) values."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    system: SystemConfig = Field(default_factory=SystemConfig)
    chains: ChainsConfig
    engine: EngineConfig = Field(default_factory=EngineConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    private_key: str = Field(default="", repr=False)

    @field_validator("private_key")
    @classmethod
    def _validate_private_key(cls, value: str) -> str:
        if value and not _PRIVATE_KEY_RE.match(value):
            raise ValueError("private_key must be 0x followed by 64 hex characters")
        return value


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries. Override values take precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_dir: str | Path = "configs",
    config_file: str = "default.yaml",
    local_file: str = "local.yaml",
) -> AppConfig:
    """Load application configuration from YAML files with env var overrides.

    Args:
        config_dir: Path to the configuration directory.
        config_file: Name of the main config YAML file.
        local_file: Optional per-deployment overrides, merged over the main file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ConfigError: If a file cannot be parsed or validation fails.
    """
    config_path = Path(config_dir)

    raw: dict[str, Any] = {}
    try:
        main_config_path = config_path / config_file
        if main_config_path.exists():
            raw = _load_yaml(main_config_path)

        local_config_path = config_path / local_file
        if local_config_path.exists():
            raw = _deep_merge(raw, _load_yaml(local_config_path))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read configuration from {config_path}: {e}") from e

    # Pydantic Settings will automatically apply env var overrides
    try:
        return AppConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
