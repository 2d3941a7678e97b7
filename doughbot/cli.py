"""
Doughbot command line.

    doughbot run       deploy or resume, register, then monitor and rebalance
    doughbot deploy    deploy or resume, register, then exit
    doughbot balance   fetch and print the current balance once
"""

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from doughbot.agent.factory import build_balance_monitor, build_control_loop
from doughbot.agent.types import LoopPhase
from doughbot.core.config import ConfigManager
from doughbot.core.exceptions import BalanceFetchError, ConfigurationError, DoughbotError, ShutdownRequested
from doughbot.core.logging import configure_logging
from doughbot.core.metrics import get_metrics_collector

EXIT_OK = 0
EXIT_TERMINATED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="doughbot", description="Dough treasury rebalancing agent")
    parser.add_argument("--config", type=Path, default=Path("config/config.yaml"),
                        help="Path to configuration YAML")
    parser.add_argument("--log-level", default=None, help="Logging level (overrides config)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Monitor the balance and rebalance (default)")
    run.add_argument("--max-cycles", type=int, default=None, help="Stop after N monitoring cycles")
    run.add_argument("--force-redeploy", action="store_true",
                     help="Deploy a new contract even if one is persisted")

    deploy = sub.add_parser("deploy", help="Deploy (or resume) and register, then exit")
    deploy.add_argument("--force-redeploy", action="store_true",
                        help="Deploy a new contract even if one is persisted")

    sub.add_parser("balance", help="Fetch the account balance once and print it")
    return parser


def install_signal_handlers(stop_event: threading.Event) -> None:
    """SIGINT/SIGTERM request a graceful stop instead of killing the process."""

    def _signal_handler(sig, frame):
        logger.info("Shutdown signal received ({}), finishing current step...", signal.Signals(sig).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


def cmd_balance(manager: ConfigManager) -> int:
    monitor = build_balance_monitor(manager.settings)
    try:
        reading = monitor.fetch()
    except BalanceFetchError as e:
        logger.error("Balance fetch failed: {}", e)
        return EXIT_TERMINATED
    finally:
        monitor.close()

    print(json.dumps({"balance": str(reading.value), "timestamp": reading.timestamp.isoformat()}))
    return EXIT_OK


def cmd_run(manager: ConfigManager, args: argparse.Namespace, deploy_only: bool) -> int:
    manager.require_secrets()
    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    loop = build_control_loop(manager.settings, stop_event)
    try:
        state = loop.run(
            max_cycles=getattr(args, "max_cycles", None),
            deploy_only=deploy_only,
            force_redeploy=args.force_redeploy,
        )
    finally:
        loop.monitor.close()

    logger.info("Metrics: {}", json.dumps(get_metrics_collector().get_all_metrics(), default=str))

    if state.phase is LoopPhase.TERMINATED:
        logger.error("Agent terminated: {}", state.error)
        return EXIT_TERMINATED
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args([*argv, "run"])

    try:
        manager = ConfigManager(args.config)
    except ConfigurationError as e:
        configure_logging(level=args.log_level or "INFO")
        logger.error("Configuration error: {}", e)
        return EXIT_CONFIG

    settings = manager.settings
    configure_logging(
        level=args.log_level or settings.log_level,
        format="json" if args.json_logs else settings.log_format,
        log_file=settings.log_file,
    )

    try:
        if args.command == "balance":
            return cmd_balance(manager)
        return cmd_run(manager, args, deploy_only=args.command == "deploy")
    except ConfigurationError as e:
        logger.error("Configuration error: {}", e)
        return EXIT_CONFIG
    except ShutdownRequested as e:
        logger.info("Stopped during startup: {}", e)
        return EXIT_OK
    except DoughbotError as e:
        logger.error("Startup failed: {}", e)
        return EXIT_TERMINATED


if __name__ == "__main__":
    sys.exit(main())
