"""
Doughbot: Treasury Rebalancing Agent
====================================

Deploys the Dough contract, registers a position and swaps on chain whenever
the monitored account balance falls below a threshold.
"""

from .core.exceptions import DoughbotError

__version__ = "0.1.0"
__author__ = "Doughbot Team"

__all__ = [
    "DoughbotError",
]
