"""Contract handle: deploy and call the Dough contract through a ChainConnection."""

import json
import threading
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from doughbot.core.exceptions import (
    CallFailed,
    ChainConnectionError,
    ConfigurationError,
    ConfirmationTimeout,
    DeploymentFailed,
    ShutdownRequested,
)
from doughbot.core.retry import RetryPolicy, retry_call
from .client import TRANSPORT_ERRORS, ChainConnection, TransactionReceipt

SOLC_HINT = "solc Dough.flat.sol --via-ir --optimize --abi --bin -o contracts"


def load_abi(path: Path) -> list[dict[str, Any]]:
    """Load a contract ABI from a solc .abi file or a JSON artifact.

    Raises:
        ConfigurationError: If the file is missing or not a valid ABI.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"ABI file not found: {path}. Build it with: {SOLC_HINT}")

    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid ABI JSON in {path}: {e}")

    if isinstance(data, dict):
        data = data.get("abi")
    if not isinstance(data, list):
        raise ConfigurationError(f"ABI in {path} must be a list of entries")
    return data


def load_bytecode(path: Path) -> str:
    """Load hex-encoded creation bytecode, returned 0x-prefixed.

    Raises:
        ConfigurationError: If the file is missing, empty or not hex.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Bytecode file not found: {path}. Build it with: {SOLC_HINT}")

    code = path.read_text().strip()
    if code.startswith("0x"):
        code = code[2:]
    if not code:
        raise ConfigurationError(f"Bytecode file is empty: {path}")
    try:
        bytes.fromhex(code)
    except ValueError:
        raise ConfigurationError(f"Bytecode in {path} is not valid hex")
    return f"0x{code}"


class ContractHandle:
    """
    Bound reference to the contract ABI, optionally at a deployed address.

    Transactions are submitted at most once per logical action: only failures
    that happened before the node accepted the transaction are retried. Once a
    hash exists, only the wait for its receipt is retried.
    """

    def __init__(
        self,
        connection: ChainConnection,
        abi: list[dict[str, Any]],
        address: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        receipt_timeout: float = 120.0,
        stop_event: Optional[threading.Event] = None,
    ):
        self.connection = connection
        self.abi = abi
        self.address = Web3.to_checksum_address(address) if address else None
        self.retry_policy = retry_policy or RetryPolicy()
        self.receipt_timeout = receipt_timeout
        self.stop_event = stop_event

    def at(self, address: str) -> "ContractHandle":
        """Return a handle bound to `address` with the same settings."""
        return ContractHandle(
            connection=self.connection,
            abi=self.abi,
            address=address,
            retry_policy=self.retry_policy,
            receipt_timeout=self.receipt_timeout,
            stop_event=self.stop_event,
        )

    def _contract(self) -> Any:
        if self.address is None:
            raise ConfigurationError("Contract handle is not bound to an address")
        return self.connection.w3.eth.contract(address=self.address, abi=self.abi)

    def deploy(self, bytecode: str, *constructor_args: Any) -> TransactionReceipt:
        """Deploy creation code and wait for confirmation.

        Returns:
            Receipt whose contract_address is set.

        Raises:
            DeploymentFailed: If the deployment reverted, its outcome stayed
                unknown, or the receipt carries no contract address.
            ChainConnectionError: If submission kept failing at transport level.
            ShutdownRequested: If shutdown was requested before submission.
        """
        factory = self.connection.w3.eth.contract(abi=self.abi, bytecode=bytecode)
        data = factory.constructor(*constructor_args).data_in_transaction

        try:
            receipt = self._transact("deploy", {"data": data})
        except ContractLogicError as e:
            raise DeploymentFailed(f"Deployment would revert: {e}")
        except CallFailed as e:
            raise DeploymentFailed(f"Deployment outcome unknown: {e.reason}", tx_hash=e.tx_hash)

        if not receipt.succeeded:
            raise DeploymentFailed("Deployment transaction reverted", tx_hash=receipt.tx_hash)
        if not receipt.contract_address:
            raise DeploymentFailed("Receipt has no contract address", tx_hash=receipt.tx_hash)

        logger.info("Deployed contract at address: {}", receipt.contract_address)
        return receipt

    def call(self, method: str, *args: Any) -> TransactionReceipt:
        """Invoke a state-changing contract method and wait until confirmed.

        Raises:
            CallFailed: reverted=True for contract-level reverts; reverted=False
                when transport retries were exhausted or the outcome is unknown.
            ShutdownRequested: If shutdown was requested before submission.
        """
        contract = self._contract()
        try:
            data = contract.encode_abi(method, args=list(args))
        except (ValueError, TypeError, AttributeError, Web3Exception) as e:
            raise CallFailed(f"Cannot encode call to {method}", method, reason=str(e))

        try:
            receipt = self._transact(method, {"to": self.address, "data": data})
        except ContractLogicError as e:
            raise CallFailed(f"{method} reverted", method, reverted=True, reason=str(e))
        except CallFailed:
            raise
        except ChainConnectionError as e:
            raise CallFailed(f"{method} could not be submitted", method, reason=str(e))

        if not receipt.succeeded:
            raise CallFailed(f"{method} reverted", method, reverted=True, tx_hash=receipt.tx_hash)
        return receipt

    def read(self, method: str, *args: Any) -> Any:
        """Call a view method without sending a transaction."""
        try:
            return self._contract().functions[method](*args).call()
        except ContractLogicError as e:
            raise CallFailed(f"{method} reverted", method, reverted=True, reason=str(e))
        except TRANSPORT_ERRORS as e:
            raise ChainConnectionError(f"Read of {method} failed: {e}")

    def code_exists(self, address: str) -> bool:
        """Whether the address holds contract code; transport errors are retried."""
        code = retry_call(
            lambda: self.connection.get_code(address),
            self.retry_policy,
            retry_on=(ChainConnectionError,),
            description=f"read code at {address}",
            stop_event=self.stop_event,
        )
        return len(code) > 0

    def _transact(self, description: str, transaction: dict[str, Any]) -> TransactionReceipt:
        if self.stop_event is not None and self.stop_event.is_set():
            raise ShutdownRequested(f"Shutdown requested before submitting {description}")

        try:
            tx_hash = retry_call(
                lambda: self._submit(transaction),
                self.retry_policy,
                retry_on=(ChainConnectionError,),
                description=f"submit {description}",
                stop_event=self.stop_event,
                should_retry=lambda e: not isinstance(e, ConfirmationTimeout),
            )
        except ConfirmationTimeout as e:
            # Acceptance unknown: never resubmit, wait on the hash instead
            tx_hash = e.tx_hash

        return self._await_receipt(description, tx_hash)

    def _submit(self, transaction: dict[str, Any]) -> str:
        prepared = self.connection.prepare(transaction)
        return self.connection.send_transaction(prepared)

    def _await_receipt(self, description: str, tx_hash: str) -> TransactionReceipt:
        # Not cancellable: a submitted transaction is always followed to its outcome
        try:
            return retry_call(
                lambda: self.connection.wait_for_receipt(tx_hash, self.receipt_timeout),
                self.retry_policy,
                retry_on=(ConfirmationTimeout,),
                description=f"confirm {description}",
            )
        except ConfirmationTimeout as e:
            raise CallFailed(
                f"{description} outcome unknown", description, tx_hash=tx_hash, reason=str(e)
            )
