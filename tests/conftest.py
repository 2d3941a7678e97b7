"""
Shared fakes for Doughbot tests.

FakeConnection stands in for the chain: it records every submitted
transaction and produces receipts, so the real ContractHandle, Deployer,
RebalanceTrigger and ControlLoop run unchanged on top of it.
"""

import threading
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from web3 import Web3

from doughbot.agent.deployer import Deployer
from doughbot.agent.loop import ControlLoop
from doughbot.agent.store import DeploymentStore
from doughbot.agent.trigger import RebalanceTrigger
from doughbot.balance.monitor import BalanceReading
from doughbot.blockchain.client import TransactionReceipt
from doughbot.blockchain.contract import ContractHandle
from doughbot.core.metrics import MetricsCollector
from doughbot.core.retry import RetryPolicy

CONTRACT_ADDRESS = Web3.to_checksum_address("0x5fbdb2315678afecb367f032d93f642f64180aa3")
OTHER_ADDRESS = Web3.to_checksum_address("0xe7f1725e7734ce288f8367e1bb143e90bb3f0512")

DOUGH_ABI = [
    {
        "inputs": [
            {"internalType": "uint256", "name": "breadAmount", "type": "uint256"},
            {"internalType": "uint256", "name": "eureAmount", "type": "uint256"},
        ],
        "name": "register",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "swapBreadToEure",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, multiplier=2.0, max_delay=0.0)


class FakeConnection:
    """In-memory chain. Call data is rendered as 'method(arg,arg)'."""

    def __init__(self, events=None, contract_address=CONTRACT_ADDRESS):
        self.events = events if events is not None else []
        self.contract_address = contract_address
        self.code = b"\x60\x80\x60\x40"
        self.sent: list[dict] = []
        self.prepare_errors: list[Exception] = []
        self.send_errors: list[Exception] = []
        self.wait_errors: list[Exception] = []
        self.revert_methods: set[str] = set()
        self.code_errors: list[Exception] = []
        self.code_reads = 0
        self.in_flight = 0
        self.max_in_flight = 0

        self.w3 = MagicMock()
        contract = self.w3.eth.contract.return_value
        contract.encode_abi.side_effect = (
            lambda method, args=None: f"{method}({','.join(str(a) for a in (args or []))})"
        )
        contract.constructor.return_value.data_in_transaction = "0x6080deploy"

    def prepare(self, transaction):
        if self.prepare_errors:
            raise self.prepare_errors.pop(0)
        return dict(transaction)

    def send_transaction(self, transaction):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(transaction)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.events.append(("send", self.describe(transaction)))
        return f"0x{len(self.sent):064x}"

    def wait_for_receipt(self, tx_hash, timeout):
        if self.wait_errors:
            raise self.wait_errors.pop(0)
        tx = self.sent[int(tx_hash, 16) - 1]
        self.in_flight -= 1
        is_deploy = "to" not in tx
        method = self.describe(tx).split("(")[0]
        return TransactionReceipt(
            tx_hash=tx_hash,
            block_number=len(self.sent),
            status=0 if method in self.revert_methods else 1,
            gas_used=21000,
            contract_address=self.contract_address if is_deploy else None,
        )

    def get_code(self, address):
        self.code_reads += 1
        if self.code_errors:
            raise self.code_errors.pop(0)
        return self.code

    @staticmethod
    def describe(transaction):
        return "deploy" if "to" not in transaction else transaction["data"]

    def calls(self, method):
        return [tx for tx in self.sent if self.describe(tx).startswith(f"{method}")]


class FakeMonitor:
    """Balance monitor replaying scripted readings or errors."""

    def __init__(self, script, events=None, on_fetch=None):
        self.script = list(script)
        self.events = events if events is not None else []
        self.on_fetch = on_fetch
        self.fetches = 0

    def fetch(self):
        self.fetches += 1
        if self.on_fetch:
            self.on_fetch()
        item = self.script.pop(0) if self.script else Decimal("1000")
        if isinstance(item, Exception):
            self.events.append(("fetch_error", str(item)))
            raise item
        value = Decimal(str(item))
        self.events.append(("fetch", value))
        return BalanceReading(value=value)

    def close(self):
        pass


@pytest.fixture
def events():
    return []


@pytest.fixture
def connection(events):
    return FakeConnection(events=events)


@pytest.fixture
def bytecode_file(tmp_path):
    path = tmp_path / "Dough.bin"
    path.write_text("6080604052")
    return path


@pytest.fixture
def store(tmp_path):
    return DeploymentStore(tmp_path / "data" / "deployment.json")


@pytest.fixture
def handle(connection):
    return ContractHandle(connection=connection, abi=DOUGH_ABI, retry_policy=FAST_RETRY)


@pytest.fixture
def deployer(handle, store, bytecode_file):
    return Deployer(handle=handle, store=store, bytecode_path=bytecode_file, register_args=(10, 10))


@pytest.fixture
def make_loop(deployer, events):
    """Build a ControlLoop over scripted balance readings."""

    def _make(script, threshold=100, max_failures=5, stop_event=None, on_fetch=None, loop_deployer=None):
        monitor = FakeMonitor(script, events=events, on_fetch=on_fetch)
        return ControlLoop(
            deployer=loop_deployer or deployer,
            monitor=monitor,
            trigger=RebalanceTrigger(threshold=Decimal(threshold)),
            poll_interval=0,
            max_consecutive_fetch_failures=max_failures,
            stop_event=stop_event or threading.Event(),
            metrics=MetricsCollector(),
        )

    return _make
