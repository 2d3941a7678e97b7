"""
Rebalance Trigger
-----------------
Decides whether a balance reading warrants a swap and submits it.
"""

from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from loguru import logger

from doughbot.balance.monitor import BalanceReading
from doughbot.blockchain.client import TransactionReceipt
from doughbot.blockchain.contract import ContractHandle
from doughbot.core.exceptions import CallFailed

PayloadBuilder = Callable[[BalanceReading], Sequence[Any]]


class RebalanceTrigger:
    """
    Threshold rule plus swap submission.

    A reading strictly below the threshold warrants a swap; a reading equal
    to the threshold is sufficient. At most one swap may be in flight: a swap
    whose outcome is unknown blocks every later one.
    """

    def __init__(
        self,
        threshold: Decimal,
        swap_method: str = "swapBreadToEure",
        swap_args: Sequence[Any] = (),
        payload_builder: Optional[PayloadBuilder] = None,
    ):
        self.threshold = Decimal(threshold)
        self.swap_method = swap_method
        self.payload_builder = payload_builder or (lambda reading: tuple(swap_args))
        self.in_flight = False
        self.unresolved_tx: Optional[str] = None

    def should_swap(self, reading: BalanceReading) -> bool:
        return reading.value < self.threshold

    def fire(self, contract: ContractHandle, reading: BalanceReading) -> TransactionReceipt:
        """Submit the swap and wait for its confirmation.

        Raises:
            CallFailed: If the swap failed, or a previous swap is still
                unresolved.
        """
        if self.in_flight or self.unresolved_tx:
            raise CallFailed(
                "Previous swap is still unresolved",
                self.swap_method,
                tx_hash=self.unresolved_tx,
            )

        payload = self.payload_builder(reading)
        logger.info(
            "Balance {} below threshold {}; submitting {}",
            reading.value, self.threshold, self.swap_method,
        )

        self.in_flight = True
        try:
            receipt = contract.call(self.swap_method, *payload)
        except CallFailed as e:
            if e.tx_hash and not e.reverted:
                self.unresolved_tx = e.tx_hash
            raise
        finally:
            self.in_flight = False

        logger.info("Swap confirmed: {}", receipt.tx_hash)
        return receipt
