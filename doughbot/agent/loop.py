"""
Control Loop
------------
Top-level state machine: bootstrap, register, then monitor the balance and
trigger swaps until shutdown or a fatal error.

    BOOTSTRAPPING -> REGISTERING -> MONITORING <-> TRIGGERING
    any phase -> TERMINATED (error) | STOPPED (graceful)
"""

import threading
import time
from typing import Optional

from doughbot.balance.monitor import BalanceMonitor
from doughbot.blockchain.contract import ContractHandle
from doughbot.core.exceptions import BalanceFetchError, DoughbotError, ShutdownRequested
from doughbot.core.logging import log, log_error_with_context, log_transaction, set_cycle, set_phase, with_trace_id
from doughbot.core.metrics import (
    MetricsCollector,
    get_metrics_collector,
    record_balance_poll,
    record_cycle_duration,
    record_transaction,
)
from .deployer import Deployer
from .trigger import RebalanceTrigger
from .types import DeploymentRecord, LoopPhase, LoopState


class ControlLoop:
    """
    Single-threaded driver of every state transition.

    The inter-cycle sleep waits on the shutdown event, and the interval is
    measured from the end of a completed cycle, so cycles never overlap.
    """

    def __init__(
        self,
        deployer: Deployer,
        monitor: BalanceMonitor,
        trigger: RebalanceTrigger,
        poll_interval: float,
        max_consecutive_fetch_failures: int = 5,
        stop_event: Optional[threading.Event] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.deployer = deployer
        self.monitor = monitor
        self.trigger = trigger
        self.poll_interval = poll_interval
        self.max_consecutive_fetch_failures = max_consecutive_fetch_failures
        self.stop_event = stop_event or threading.Event()
        self.metrics = metrics or get_metrics_collector()
        self.state = LoopState()
        self.contract: Optional[ContractHandle] = None

    def stop(self) -> None:
        """Request graceful shutdown; observed at the next suspension point."""
        self.stop_event.set()

    def run(
        self,
        max_cycles: Optional[int] = None,
        deploy_only: bool = False,
        force_redeploy: bool = False,
    ) -> LoopState:
        """Run the loop until it reaches a final phase.

        Args:
            max_cycles: Stop gracefully after this many monitoring cycles.
            deploy_only: Stop gracefully once bootstrap and registration are done.
            force_redeploy: Replace a persisted contract address.

        Returns:
            The final loop state; state.error holds the cause when TERMINATED.
        """
        if self.state.phase.is_final:
            return self.state

        set_phase(self.state.phase.value)
        try:
            if self.stop_event.is_set():
                raise ShutdownRequested("Shutdown requested before bootstrap")

            record = self._bootstrap(force_redeploy)
            if deploy_only:
                log.info("Deploy-only run complete for {}", record.address)
                return self._finish(LoopPhase.STOPPED)

            self.contract = self.deployer.contract_for(record)
            self._transition(LoopPhase.MONITORING)
            self._monitor(max_cycles)
            return self._finish(LoopPhase.STOPPED)

        except ShutdownRequested as e:
            log.info("Shutdown observed: {}", e)
            return self._finish(LoopPhase.STOPPED)
        except DoughbotError as e:
            return self._finish(LoopPhase.TERMINATED, e)
        except Exception as e:
            self._finish(LoopPhase.TERMINATED, e)
            raise
        finally:
            set_phase(None)
            set_cycle(None)

    def _bootstrap(self, force_redeploy: bool) -> DeploymentRecord:
        record = self.deployer.bootstrap(force_redeploy=force_redeploy)
        self.state.contract_address = record.address
        if self.deployer.last_receipt is not None:
            record_transaction(self.metrics, "deploy")
            log_transaction("deploy", record.deploy_tx_hash, address=record.address)

        if record.registered:
            log.info("Registration already recorded for {}; not registering again", record.address)
            return record

        if self.stop_event.is_set():
            raise ShutdownRequested("Shutdown requested before registration")

        self._transition(LoopPhase.REGISTERING)
        record = self.deployer.register(record)
        record_transaction(self.metrics, "register")
        log_transaction("register", record.register_tx_hash, address=record.address)
        return record

    def _monitor(self, max_cycles: Optional[int]) -> None:
        while not self.stop_event.is_set():
            if self._cycles_exhausted(max_cycles):
                return

            self.run_cycle()

            # No trailing sleep once the last allowed cycle has run
            if self._cycles_exhausted(max_cycles) or self.stop_event.wait(self.poll_interval):
                return

    def _cycles_exhausted(self, max_cycles: Optional[int]) -> bool:
        if max_cycles is None or self.state.cycle < max_cycles:
            return False
        log.info("Reached {} monitoring cycles", max_cycles)
        return True

    @with_trace_id
    def run_cycle(self) -> None:
        """One monitoring cycle: fetch, compare, and swap if warranted."""
        self.state.cycle += 1
        set_cycle(self.state.cycle)
        started = time.monotonic()
        try:
            self._check_balance()
        finally:
            record_cycle_duration(self.metrics, time.monotonic() - started)

    def _check_balance(self) -> None:
        try:
            reading = self.monitor.fetch()
        except BalanceFetchError as e:
            self._record_fetch_failure(e)
            return

        self.state.consecutive_fetch_failures = 0
        record_balance_poll(self.metrics, reading.value)

        if self.stop_event.is_set():
            log.info("Shutdown requested after balance fetch; not acting on {}", reading.value)
            return

        if self.trigger.should_swap(reading):
            self._transition(LoopPhase.TRIGGERING)
            receipt = self.trigger.fire(self.contract, reading)
            self.state.last_swap_tx = receipt.tx_hash
            self.state.swaps_issued += 1
            record_transaction(self.metrics, "swap")
            log_transaction("swap", receipt.tx_hash, balance=reading.value)
            self._transition(LoopPhase.MONITORING)
        else:
            log.info("Balance {} at or above threshold {}", reading.value, self.trigger.threshold)

        self.state.last_reading = reading

    def _record_fetch_failure(self, error: BalanceFetchError) -> None:
        self.state.consecutive_fetch_failures += 1
        record_balance_poll(self.metrics, None)
        failures = self.state.consecutive_fetch_failures

        if failures >= self.max_consecutive_fetch_failures:
            log.error(
                "Balance service failing for {} consecutive polls: {}; still polling",
                failures, error,
            )
        else:
            log.warning("Balance fetch failed ({} in a row): {}", failures, error)

    def _transition(self, phase: LoopPhase) -> None:
        previous = self.state.phase
        self.state.phase = phase
        self.state.transitions.append(phase)
        set_phase(phase.value)
        log.debug("Phase {} -> {}", previous.value, phase.value)

    def _finish(self, phase: LoopPhase, error: Optional[BaseException] = None) -> LoopState:
        self.state.error = error
        if error is not None:
            log_error_with_context(error, {
                "phase": self.state.phase.value,
                "contract": self.state.contract_address,
                "cycle": self.state.cycle,
                "last_swap_tx": self.state.last_swap_tx,
            })
        self._transition(phase)
        if error is None:
            log.info("Loop stopped after {} cycles, {} swaps", self.state.cycle, self.state.swaps_issued)
        else:
            log.critical("Loop terminated: {}", error)
        return self.state
