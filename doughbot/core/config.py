"""
Core Configuration Management
-----------------------------
Settings are read from a single config.yaml, secrets from DOUGH_* environment
variables (or a .env file). Unknown keys fail fast.
"""

from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class NetworkConfig(BaseModel):
    """Chain connection configuration."""
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: Optional[int] = None
    receipt_timeout_seconds: float = 120.0
    receipt_poll_seconds: float = 1.0
    max_gas_limit: int = 5_000_000
    gas_price_gwei: Optional[float] = None
    gas_safety_margin: float = 1.2

    @field_validator('gas_safety_margin')
    @classmethod
    def validate_margin(cls, v: float) -> float:
        if v < 1.0 or v > 3.0:
            raise ValueError("Gas safety margin must be between 1.0 and 3.0")
        return v


class ContractConfig(BaseModel):
    """Dough contract artifacts and call parameters."""
    abi_path: Path = Path("contracts/Dough.abi")
    bytecode_path: Path = Path("contracts/Dough.bin")
    state_file: Path = Path("data/deployment.json")
    register_args: list[int] = [10, 10]
    swap_method: str = "swapBreadToEure"
    swap_args: list[Any] = []


class BalanceConfig(BaseModel):
    """Account balance service configuration."""
    base_url: str = "http://localhost:8000"
    field: str = "balance"
    timeout_seconds: float = 10.0


class MonitorConfig(BaseModel):
    """Monitoring cadence and threshold."""
    poll_interval_seconds: float = 60.0
    balance_threshold: Decimal = Decimal("100")
    max_consecutive_fetch_failures: int = 5

    @field_validator('poll_interval_seconds')
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Poll interval must be positive")
        return v

    @field_validator('balance_threshold')
    @classmethod
    def validate_threshold(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Balance threshold must not be negative")
        return v


class RetryConfig(BaseModel):
    """Bounded exponential backoff for transient failures."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    @field_validator('max_attempts')
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class CoreSettings(BaseSettings):
    """Application settings loaded from config.yaml and the environment."""

    model_config = SettingsConfigDict(
        env_prefix="DOUGH_",
        env_file=".env",
        case_sensitive=False,
        extra="forbid",  # Fail fast on unknown config keys
    )

    log_level: str = "INFO"
    log_format: str = "human"
    log_file: Optional[str] = None

    network: NetworkConfig = NetworkConfig()
    contract: ContractConfig = ContractConfig()
    balance: BalanceConfig = BalanceConfig()
    monitor: MonitorConfig = MonitorConfig()
    retry: RetryConfig = RetryConfig()

    # Secrets
    api_token: Optional[SecretStr] = None
    wallet_private_key: Optional[SecretStr] = None

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("human", "json"):
            raise ValueError("log_format must be 'human' or 'json'")
        return v


class ConfigManager:
    """Loads config.yaml into validated settings."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self.config_path: Path = Path(config_path) if config_path else Path("config") / "config.yaml"
        self.settings: CoreSettings = self._load_configuration()

    def _load_configuration(self) -> CoreSettings:
        config_data = self._read_yaml()
        try:
            return CoreSettings(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_path}: {e}")

    def _read_yaml(self) -> dict[str, Any]:
        """Read the YAML file; a missing file means defaults plus environment."""
        if not self.config_path.exists():
            return {}

        try:
            with open(self.config_path) as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}")

        if config_data is None:
            return {}
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")
        return config_data

    def require_secrets(self) -> None:
        """Validate that the credentials needed for an unattended run are set."""
        missing = []
        if self.settings.api_token is None:
            missing.append("DOUGH_API_TOKEN")
        if self.settings.wallet_private_key is None:
            missing.append("DOUGH_WALLET_PRIVATE_KEY")
        if missing:
            raise ConfigurationError("Missing required secrets", {"missing": ",".join(missing)})


_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """Get the process-wide configuration manager, loading it on first use."""
    global _config_manager
    if _config_manager is None or config_path is not None:
        _config_manager = ConfigManager(config_path)
    return _config_manager
