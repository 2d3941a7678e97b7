"""Core modules for Doughbot."""

from .config import ConfigManager, CoreSettings, get_config_manager
from .exceptions import (
    BalanceFetchError,
    CallFailed,
    ChainConnectionError,
    ConfigurationError,
    ConfirmationTimeout,
    DeploymentFailed,
    DoughbotError,
    ShutdownRequested,
    StateStoreError,
)
from .retry import RetryPolicy, retry_call

__all__ = [
    "ConfigManager",
    "CoreSettings",
    "get_config_manager",
    "DoughbotError",
    "ConfigurationError",
    "ChainConnectionError",
    "ConfirmationTimeout",
    "DeploymentFailed",
    "CallFailed",
    "BalanceFetchError",
    "StateStoreError",
    "ShutdownRequested",
    "RetryPolicy",
    "retry_call",
]
