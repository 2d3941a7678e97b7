"""Wires settings into a ready-to-run control loop."""

import threading
from typing import Optional

from loguru import logger

from doughbot.balance.monitor import BalanceMonitor
from doughbot.blockchain.client import ChainConnection, ChainConnectionBuilder
from doughbot.blockchain.contract import ContractHandle, load_abi
from doughbot.core.config import CoreSettings
from doughbot.core.exceptions import ChainConnectionError, ConfigurationError
from doughbot.core.retry import RetryPolicy, retry_call
from .deployer import Deployer
from .loop import ControlLoop
from .store import DeploymentStore
from .trigger import RebalanceTrigger


def build_balance_monitor(
    settings: CoreSettings,
    stop_event: Optional[threading.Event] = None,
) -> BalanceMonitor:
    if settings.api_token is None:
        raise ConfigurationError("Balance service token missing (set DOUGH_API_TOKEN)")
    return BalanceMonitor(
        config=settings.balance,
        api_token=settings.api_token.get_secret_value(),
        retry_policy=RetryPolicy.from_config(settings.retry),
        stop_event=stop_event,
    )


def build_connection(
    settings: CoreSettings,
    stop_event: Optional[threading.Event] = None,
) -> ChainConnection:
    """Build and verify the chain connection; malformed keys fail here.

    An unreachable node is retried with backoff; a wrong chain ID is not.
    """
    if settings.wallet_private_key is None:
        raise ConfigurationError("Wallet key missing (set DOUGH_WALLET_PRIVATE_KEY)")
    connection = ChainConnectionBuilder.from_settings(
        settings.network, settings.wallet_private_key.get_secret_value()
    ).build()
    retry_call(
        connection.verify,
        RetryPolicy.from_config(settings.retry),
        retry_on=(ChainConnectionError,),
        description="chain connection check",
        stop_event=stop_event,
    )
    return connection


def build_control_loop(
    settings: CoreSettings,
    stop_event: threading.Event,
    connection: Optional[ChainConnection] = None,
    monitor: Optional[BalanceMonitor] = None,
) -> ControlLoop:
    """Assemble every component of the agent from settings."""
    retry_policy = RetryPolicy.from_config(settings.retry)
    connection = connection or build_connection(settings, stop_event)

    handle = ContractHandle(
        connection=connection,
        abi=load_abi(settings.contract.abi_path),
        retry_policy=retry_policy,
        receipt_timeout=settings.network.receipt_timeout_seconds,
        stop_event=stop_event,
    )
    deployer = Deployer(
        handle=handle,
        store=DeploymentStore(settings.contract.state_file),
        bytecode_path=settings.contract.bytecode_path,
        register_args=settings.contract.register_args,
    )
    trigger = RebalanceTrigger(
        threshold=settings.monitor.balance_threshold,
        swap_method=settings.contract.swap_method,
        swap_args=settings.contract.swap_args,
    )

    logger.info(
        "Agent configured: threshold {}, poll every {}s, state file {}",
        settings.monitor.balance_threshold,
        settings.monitor.poll_interval_seconds,
        settings.contract.state_file,
    )

    return ControlLoop(
        deployer=deployer,
        monitor=monitor or build_balance_monitor(settings, stop_event),
        trigger=trigger,
        poll_interval=settings.monitor.poll_interval_seconds,
        max_consecutive_fetch_failures=settings.monitor.max_consecutive_fetch_failures,
        stop_event=stop_event,
    )
