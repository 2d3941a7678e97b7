"""Account balance monitoring."""

from .monitor import BalanceMonitor, BalanceReading, parse_balance

__all__ = ["BalanceMonitor", "BalanceReading", "parse_balance"]
