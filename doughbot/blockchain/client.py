"""Web3 chain connection: RPC endpoint plus signing identity."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from loguru import logger
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from doughbot.core.config import NetworkConfig
from doughbot.core.exceptions import ChainConnectionError, ConfigurationError, ConfirmationTimeout

# Failures of the transport itself, as opposed to contract reverts
TRANSPORT_ERRORS = (requests.RequestException, OSError, Web3Exception)


@dataclass(frozen=True)
class TransactionReceipt:
    """Confirmed outcome of a submitted transaction."""
    tx_hash: str
    block_number: int
    status: int
    gas_used: int
    contract_address: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_web3(cls, receipt: Any) -> "TransactionReceipt":
        contract_address = receipt.get("contractAddress")
        return cls(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            status=receipt["status"],
            gas_used=receipt["gasUsed"],
            contract_address=Web3.to_checksum_address(contract_address) if contract_address else None,
        )


class Capability(str, Enum):
    """Capabilities a connection needs before it may sign and send."""
    RPC_ENDPOINT = "rpc_endpoint"
    SIGNER = "signer"
    GAS_ESTIMATION = "gas_estimation"
    NONCE_MANAGEMENT = "nonce_management"
    CHAIN_ID = "chain_id"


class ChainConnection:
    """Fully configured chain connection.

    Use ChainConnectionBuilder to construct one; the builder guarantees every
    capability is present.
    """

    def __init__(
        self,
        w3: Web3,
        account: LocalAccount,
        max_gas_limit: int,
        gas_safety_margin: float,
        gas_price_gwei: Optional[float],
        expected_chain_id: Optional[int],
        receipt_poll_seconds: float = 1.0,
    ):
        self.w3 = w3
        self.account = account
        self.max_gas_limit = max_gas_limit
        self.gas_safety_margin = gas_safety_margin
        self.gas_price_gwei = gas_price_gwei
        self.expected_chain_id = expected_chain_id
        self.receipt_poll_seconds = receipt_poll_seconds
        self._chain_id: Optional[int] = None

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def chain_id(self) -> int:
        """Chain ID reported by the node, cached after the first lookup."""
        if self._chain_id is None:
            try:
                self._chain_id = self.w3.eth.chain_id
            except TRANSPORT_ERRORS as e:
                raise ChainConnectionError(f"Failed to read chain ID: {e}")
        return self._chain_id

    def verify(self) -> None:
        """Verify the endpoint is reachable and on the expected chain.

        Raises:
            ChainConnectionError: If the node is unreachable.
            ConfigurationError: If the node reports an unexpected chain ID.
        """
        try:
            if not self.w3.is_connected():
                raise ChainConnectionError("Web3 client is not connected")
            block_number = self.w3.eth.block_number
        except TRANSPORT_ERRORS as e:
            raise ChainConnectionError(f"Connection verification failed: {e}")

        chain_id = self.chain_id
        if self.expected_chain_id is not None and chain_id != self.expected_chain_id:
            raise ConfigurationError(
                f"Wrong network: expected chain ID {self.expected_chain_id}, got {chain_id}"
            )

        logger.info("Connected (Chain ID: {}, Block: {}, Account: {})",
                    chain_id, block_number, self.address)

    def get_gas_price(self) -> int:
        if self.gas_price_gwei:
            return self.w3.to_wei(self.gas_price_gwei, 'gwei')
        return self.w3.eth.gas_price

    def estimate_gas(self, transaction: dict[str, Any]) -> int:
        """Estimate gas with safety margin, capped at the configured limit.

        Raises:
            ContractLogicError: If the node reports the call would revert.
        """
        estimated = self.w3.eth.estimate_gas(transaction)
        return min(int(estimated * self.gas_safety_margin), self.max_gas_limit)

    def prepare(self, transaction: dict[str, Any]) -> dict[str, Any]:
        """Fill sender, nonce, chain ID, gas price and gas limit.

        Raises:
            ContractLogicError: If gas estimation reverts.
            ChainConnectionError: On transport failure.
        """
        tx = dict(transaction)
        try:
            tx.setdefault('from', self.address)
            tx.setdefault('nonce', self.w3.eth.get_transaction_count(self.address, 'pending'))
            tx.setdefault('chainId', self.chain_id)
            tx.setdefault('gasPrice', self.get_gas_price())
            if 'gas' not in tx:
                tx['gas'] = self.estimate_gas(tx)
        except ContractLogicError:
            raise
        except TRANSPORT_ERRORS as e:
            raise ChainConnectionError(f"Failed to prepare transaction: {e}")

        if tx['gas'] > self.max_gas_limit:
            raise ConfigurationError(
                f"Gas limit {tx['gas']} exceeds maximum {self.max_gas_limit}"
            )
        return tx

    def send_transaction(self, transaction: dict[str, Any]) -> str:
        """Sign locally and submit a prepared transaction.

        The hash is known before submission. If the submit call fails the
        node is asked whether it has the transaction anyway, so an accepted
        transaction is never reported as unsent.

        Returns:
            Transaction hash (0x-prefixed).

        Raises:
            ChainConnectionError: If the transaction was definitely not accepted.
            ConfirmationTimeout: If acceptance cannot be determined.
        """
        signed = self.account.sign_transaction(transaction)
        tx_hash = Web3.to_hex(signed.hash)

        try:
            self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except TRANSPORT_ERRORS as e:
            if self._is_known(tx_hash):
                logger.warning("Submit of {} reported {} but node has it; continuing", tx_hash, e)
                return tx_hash
            raise ChainConnectionError(f"Transaction submit failed: {e}", {"tx_hash": tx_hash})

        logger.info("Transaction sent: {}", tx_hash)
        return tx_hash

    def _is_known(self, tx_hash: str) -> bool:
        try:
            self.w3.eth.get_transaction(HexBytes(tx_hash))
            return True
        except TransactionNotFound:
            return False
        except TRANSPORT_ERRORS as e:
            raise ConfirmationTimeout(
                f"Cannot determine whether transaction was accepted: {e}", tx_hash
            )

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt:
        """Block until the transaction is mined.

        Raises:
            ConfirmationTimeout: If no receipt arrives within `timeout`
                or the node cannot be reached while waiting.
        """
        try:
            raw = self.w3.eth.wait_for_transaction_receipt(
                HexBytes(tx_hash), timeout=timeout, poll_latency=self.receipt_poll_seconds
            )
        except TimeExhausted:
            raise ConfirmationTimeout(f"No receipt after {timeout}s", tx_hash)
        except TRANSPORT_ERRORS as e:
            raise ConfirmationTimeout(f"Receipt wait failed: {e}", tx_hash)

        receipt = TransactionReceipt.from_web3(raw)
        if receipt.succeeded:
            logger.info("Transaction {} confirmed in block {}", tx_hash, receipt.block_number)
        else:
            logger.error("Transaction {} failed with status {}", tx_hash, receipt.status)
        return receipt

    def get_code(self, address: str) -> bytes:
        try:
            return bytes(self.w3.eth.get_code(Web3.to_checksum_address(address)))
        except TRANSPORT_ERRORS as e:
            raise ChainConnectionError(f"Failed to read code at {address}: {e}")


class ChainConnectionBuilder:
    """Assembles a ChainConnection, failing fast on missing capabilities."""

    def __init__(self) -> None:
        self._rpc_url: Optional[str] = None
        self._request_timeout: float = 30.0
        self._account: Optional[LocalAccount] = None
        self._gas: Optional[tuple[int, float, Optional[float]]] = None
        self._nonce_management = False
        self._chain_id_tagging = False
        self._expected_chain_id: Optional[int] = None
        self._receipt_poll_seconds = 1.0

    def rpc(self, rpc_url: str, request_timeout: float = 30.0) -> "ChainConnectionBuilder":
        if not rpc_url:
            raise ConfigurationError("RPC URL is required but not provided")
        self._rpc_url = rpc_url
        self._request_timeout = request_timeout
        return self

    def signer(self, private_key: str) -> "ChainConnectionBuilder":
        """Attach signing material.

        Raises:
            ConfigurationError: If the key is malformed.
        """
        key = (private_key or "").strip()
        if not key.startswith('0x'):
            key = f"0x{key}"
        try:
            self._account = Account.from_key(key)
        except Exception as e:
            # The exception text may echo key material
            raise ConfigurationError(f"Malformed wallet private key ({type(e).__name__})")
        return self

    def gas_estimation(
        self,
        max_gas_limit: int,
        safety_margin: float = 1.2,
        gas_price_gwei: Optional[float] = None,
    ) -> "ChainConnectionBuilder":
        self._gas = (max_gas_limit, safety_margin, gas_price_gwei)
        return self

    def nonce_management(self) -> "ChainConnectionBuilder":
        self._nonce_management = True
        return self

    def chain_id(self, expected: Optional[int] = None) -> "ChainConnectionBuilder":
        """Enable chain-ID tagging; `expected` is verified when given."""
        self._chain_id_tagging = True
        self._expected_chain_id = expected
        return self

    def receipt_polling(self, seconds: float) -> "ChainConnectionBuilder":
        self._receipt_poll_seconds = seconds
        return self

    def missing_capabilities(self) -> list[Capability]:
        missing = []
        if self._rpc_url is None:
            missing.append(Capability.RPC_ENDPOINT)
        if self._account is None:
            missing.append(Capability.SIGNER)
        if self._gas is None:
            missing.append(Capability.GAS_ESTIMATION)
        if not self._nonce_management:
            missing.append(Capability.NONCE_MANAGEMENT)
        if not self._chain_id_tagging:
            missing.append(Capability.CHAIN_ID)
        return missing

    def build(self, w3: Optional[Web3] = None) -> ChainConnection:
        """Build the connection.

        Args:
            w3: Pre-built Web3 instance; an HTTP provider is created otherwise.

        Raises:
            ConfigurationError: If any capability is missing.
        """
        missing = self.missing_capabilities()
        if missing:
            raise ConfigurationError(
                "Chain connection is missing capabilities",
                {"missing": ",".join(c.value for c in missing)},
            )

        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(
                self._rpc_url, request_kwargs={"timeout": self._request_timeout}
            ))

        max_gas_limit, safety_margin, gas_price_gwei = self._gas
        return ChainConnection(
            w3=w3,
            account=self._account,
            max_gas_limit=max_gas_limit,
            gas_safety_margin=safety_margin,
            gas_price_gwei=gas_price_gwei,
            expected_chain_id=self._expected_chain_id,
            receipt_poll_seconds=self._receipt_poll_seconds,
        )

    @classmethod
    def from_settings(cls, network: NetworkConfig, private_key: str) -> "ChainConnectionBuilder":
        """Builder with every capability configured from settings."""
        return (
            cls()
            .rpc(network.rpc_url)
            .signer(private_key)
            .gas_estimation(network.max_gas_limit, network.gas_safety_margin, network.gas_price_gwei)
            .nonce_management()
            .chain_id(network.chain_id)
            .receipt_polling(network.receipt_poll_seconds)
        )
