"""
Control Loop Tests
------------------
State machine behaviour: bootstrap idempotency, threshold triggering,
transient balance failures, fatal paths and graceful shutdown.
"""

import threading
from decimal import Decimal

import pytest

from doughbot.agent.deployer import Deployer
from doughbot.agent.types import DeploymentRecord, LoopPhase
from doughbot.core.exceptions import BalanceFetchError, CallFailed, ChainConnectionError, DeploymentFailed
from tests.conftest import CONTRACT_ADDRESS


class TestThresholdTriggering:
    """Swaps happen only for readings strictly below the threshold."""

    def test_scenario_swaps_once_right_after_low_reading(self, make_loop, connection, events):
        loop = make_loop([150, 120, 80, 200], threshold=100)

        state = loop.run(max_cycles=4)

        assert state.phase is LoopPhase.STOPPED
        assert state.error is None
        assert state.swaps_issued == 1
        assert len(connection.calls("swapBreadToEure")) == 1

        monitoring_events = events[events.index(("send", "register(10,10)")) + 1:]
        assert monitoring_events == [
            ("fetch", Decimal("150")),
            ("fetch", Decimal("120")),
            ("fetch", Decimal("80")),
            ("send", "swapBreadToEure()"),
            ("fetch", Decimal("200")),
        ]
        assert state.last_reading.value == Decimal("200")

    @pytest.mark.parametrize("readings", [[100], [100, 101, 5000], [250, 100.0001]])
    def test_readings_at_or_above_threshold_never_swap(self, make_loop, connection, readings):
        loop = make_loop(readings, threshold=100)

        state = loop.run(max_cycles=len(readings))

        assert state.swaps_issued == 0
        assert connection.calls("swapBreadToEure") == []
        assert LoopPhase.TRIGGERING not in state.transitions

    def test_reading_equal_to_threshold_is_sufficient(self, make_loop, connection):
        loop = make_loop(["100.00"], threshold=100)

        loop.run(max_cycles=1)

        assert connection.calls("swapBreadToEure") == []

    def test_one_swap_per_cycle_for_repeated_low_readings(self, make_loop, connection):
        loop = make_loop([10, 20, 30], threshold=100)

        state = loop.run(max_cycles=3)

        assert state.swaps_issued == 3
        assert len(connection.calls("swapBreadToEure")) == 3
        assert connection.max_in_flight == 1

    def test_swap_records_transaction_and_returns_to_monitoring(self, make_loop, connection):
        loop = make_loop([50], threshold=100)

        state = loop.run(max_cycles=1)

        assert state.last_swap_tx == f"0x{len(connection.sent):064x}"
        assert state.transitions[-3:] == [LoopPhase.TRIGGERING, LoopPhase.MONITORING, LoopPhase.STOPPED]
        assert loop.metrics.get_all_metrics()["counters"]["swaps_total"] == 1


class TestBootstrapIdempotency:
    """A persisted deployment is never redeployed or re-registered."""

    def test_fresh_start_deploys_registers_and_persists(self, make_loop, connection, store):
        state = make_loop([]).run(deploy_only=True)

        assert state.phase is LoopPhase.STOPPED
        assert len(connection.calls("deploy")) == 1
        assert len(connection.calls("register")) == 1
        record = store.load()
        assert record.address == CONTRACT_ADDRESS
        assert record.registered is True

    def test_second_run_issues_no_deploy_or_register(self, make_loop, connection):
        make_loop([]).run(deploy_only=True)
        state = make_loop([500]).run(max_cycles=1)

        assert state.phase is LoopPhase.STOPPED
        assert len(connection.calls("deploy")) == 1
        assert len(connection.calls("register")) == 1
        assert LoopPhase.REGISTERING not in state.transitions

    def test_resume_from_persisted_address_skips_registration(self, make_loop, connection, store):
        store.save(DeploymentRecord(address=CONTRACT_ADDRESS, registered=True))

        state = make_loop([500]).run(max_cycles=1)

        assert connection.calls("deploy") == []
        assert connection.calls("register") == []
        assert state.contract_address == CONTRACT_ADDRESS
        assert state.transitions[:2] == [LoopPhase.BOOTSTRAPPING, LoopPhase.MONITORING]

    def test_unregistered_record_is_registered_without_redeploy(self, make_loop, connection, store):
        store.save(DeploymentRecord(address=CONTRACT_ADDRESS, registered=False))

        make_loop([]).run(deploy_only=True)

        assert connection.calls("deploy") == []
        assert len(connection.calls("register")) == 1
        assert store.load().registered is True

    def test_transient_rpc_failure_on_resume_is_retried(self, make_loop, connection, store):
        store.save(DeploymentRecord(address=CONTRACT_ADDRESS, registered=True))
        connection.code_errors = [ChainConnectionError("connection refused")]

        loop = make_loop([150])
        state = loop.run(max_cycles=1)

        assert state.phase is LoopPhase.STOPPED
        assert state.error is None
        assert connection.code_reads == 2
        assert loop.monitor.fetches == 1
        assert connection.sent == []

    def test_unreachable_rpc_on_resume_terminates_after_retries(self, make_loop, connection, store):
        store.save(DeploymentRecord(address=CONTRACT_ADDRESS, registered=True))
        connection.code_errors = [ChainConnectionError("connection refused")] * 3

        loop = make_loop([150])
        state = loop.run(max_cycles=1)

        assert state.phase is LoopPhase.TERMINATED
        assert isinstance(state.error, ChainConnectionError)
        assert connection.code_reads == 3
        assert loop.monitor.fetches == 0


class TestBalanceFailures:
    """Balance service outages never stop the loop."""

    def test_consecutive_fetch_errors_keep_loop_alive(self, make_loop):
        failures = [BalanceFetchError("down", status_code=503) for _ in range(7)]
        loop = make_loop(failures + [150], max_failures=3)

        state = loop.run(max_cycles=8)

        assert state.phase is LoopPhase.STOPPED
        assert state.error is None
        assert loop.monitor.fetches == 8
        assert state.consecutive_fetch_failures == 0
        assert state.last_reading.value == Decimal("150")

    def test_failure_count_tracks_current_streak(self, make_loop):
        loop = make_loop([BalanceFetchError("bad"), BalanceFetchError("bad")])

        state = loop.run(max_cycles=2)

        assert state.consecutive_fetch_failures == 2
        assert state.phase is LoopPhase.STOPPED
        counters = loop.metrics.get_all_metrics()["counters"]
        assert counters["balance_fetch_errors_total"] == 2

    def test_low_reading_after_outage_still_triggers(self, make_loop, connection):
        loop = make_loop([BalanceFetchError("timeout"), 40], threshold=100)

        state = loop.run(max_cycles=2)

        assert state.swaps_issued == 1
        assert len(connection.calls("swapBreadToEure")) == 1


class TestFatalPaths:
    """Fatal errors move the loop to TERMINATED with the cause recorded."""

    def test_deployment_without_address_terminates_before_monitoring(
        self, make_loop, connection, store
    ):
        connection.contract_address = None
        loop = make_loop([50])

        state = loop.run(max_cycles=5)

        assert state.phase is LoopPhase.TERMINATED
        assert isinstance(state.error, DeploymentFailed)
        assert loop.monitor.fetches == 0
        assert LoopPhase.MONITORING not in state.transitions
        assert connection.calls("register") == []
        assert not store.exists()

    def test_reverted_swap_terminates(self, make_loop, connection):
        connection.revert_methods.add("swapBreadToEure")
        loop = make_loop([150, 50, 50], threshold=100)

        state = loop.run(max_cycles=3)

        assert state.phase is LoopPhase.TERMINATED
        assert isinstance(state.error, CallFailed)
        assert state.error.reverted is True
        assert loop.monitor.fetches == 2
        assert len(connection.calls("swapBreadToEure")) == 1

    def test_failed_registration_terminates(self, make_loop, connection):
        connection.revert_methods.add("register")

        state = make_loop([50]).run(max_cycles=1)

        assert state.phase is LoopPhase.TERMINATED
        assert isinstance(state.error, CallFailed)
        assert connection.calls("swapBreadToEure") == []

    def test_terminated_loop_does_not_restart(self, make_loop, connection):
        connection.contract_address = None
        loop = make_loop([50])
        loop.run()

        state = loop.run()

        assert state.phase is LoopPhase.TERMINATED
        assert len(connection.calls("deploy")) == 1


class TestShutdown:
    """Graceful stop is distinct from termination."""

    def test_stop_before_start_submits_nothing(self, make_loop, connection):
        stop = threading.Event()
        stop.set()

        state = make_loop([50], stop_event=stop).run()

        assert state.phase is LoopPhase.STOPPED
        assert state.error is None
        assert connection.sent == []

    def test_stop_during_fetch_prevents_swap(self, make_loop, connection):
        stop = threading.Event()
        loop = make_loop([50], threshold=100, stop_event=stop, on_fetch=stop.set)

        state = loop.run()

        assert state.phase is LoopPhase.STOPPED
        assert state.error is None
        assert loop.monitor.fetches == 1
        assert connection.calls("swapBreadToEure") == []

    def test_stop_method_ends_monitoring(self, make_loop):
        loop = make_loop([150, 150, 150])
        loop.monitor.on_fetch = loop.stop

        state = loop.run()

        assert state.phase is LoopPhase.STOPPED
        assert loop.monitor.fetches == 1

    def test_submitted_deploy_is_awaited_before_stopping(self, make_loop, connection, store):
        stop = threading.Event()
        loop = make_loop([50], threshold=100, stop_event=stop)
        original_send = connection.send_transaction

        def send_then_stop(tx):
            tx_hash = original_send(tx)
            stop.set()
            return tx_hash

        connection.send_transaction = send_then_stop

        state = loop.run()

        assert state.phase is LoopPhase.STOPPED
        assert state.error is None
        assert len(connection.calls("deploy")) == 1
        assert connection.calls("register") == []
        assert connection.in_flight == 0
        assert store.load().registered is False

    def test_swap_in_flight_completes_when_stop_arrives(self, make_loop, connection, store):
        store.save(DeploymentRecord(address=CONTRACT_ADDRESS, registered=True))
        stop = threading.Event()
        loop = make_loop([50], threshold=100, stop_event=stop)
        original_send = connection.send_transaction

        def send_then_stop(tx):
            tx_hash = original_send(tx)
            stop.set()
            return tx_hash

        connection.send_transaction = send_then_stop

        state = loop.run()

        assert state.phase is LoopPhase.STOPPED
        assert state.swaps_issued == 1
        assert state.last_swap_tx is not None
        assert connection.in_flight == 0


class TestForceRedeploy:

    def test_force_redeploy_replaces_persisted_address(self, make_loop, connection, store, handle, bytecode_file):
        store.save(DeploymentRecord(address=CONTRACT_ADDRESS, registered=True))
        connection.contract_address = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
        deployer = Deployer(handle=handle, store=store, bytecode_path=bytecode_file)

        state = make_loop([], loop_deployer=deployer).run(deploy_only=True, force_redeploy=True)

        assert state.phase is LoopPhase.STOPPED
        assert len(connection.calls("deploy")) == 1
        assert len(connection.calls("register")) == 1
        assert store.load().address.lower() == "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"


class TestCycleBound:

    def test_no_sleep_after_last_allowed_cycle(self, make_loop):
        loop = make_loop([150, 150, 150])
        loop.poll_interval = 3600
        waits = []
        loop.stop_event.wait = lambda timeout: waits.append(timeout) or False

        state = loop.run(max_cycles=2)

        assert state.phase is LoopPhase.STOPPED
        assert loop.monitor.fetches == 2
        assert waits == [3600]

    def test_zero_cycles_only_bootstraps(self, make_loop, connection):
        loop = make_loop([50])

        state = loop.run(max_cycles=0)

        assert state.phase is LoopPhase.STOPPED
        assert loop.monitor.fetches == 0
        assert connection.calls("swapBreadToEure") == []
