"""
Deployer
--------
Bootstraps the contract: resumes from the persisted address or deploys a new
instance, then performs the one-time registration call.
"""

from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from doughbot.blockchain.client import TransactionReceipt
from doughbot.blockchain.contract import ContractHandle, load_bytecode
from doughbot.core.exceptions import StateStoreError
from .store import DeploymentStore
from .types import DeploymentRecord

REGISTER_METHOD = "register"


class Deployer:
    """Owns the write side of the deployment store."""

    def __init__(
        self,
        handle: ContractHandle,
        store: DeploymentStore,
        bytecode_path: Path,
        register_args: Sequence[int] = (10, 10),
        verify_code: bool = True,
    ):
        """Initialize deployer.

        Args:
            handle: Unbound contract handle (ABI + connection)
            store: Persisted deployment state
            bytecode_path: Hex creation bytecode, read only when deploying
            register_args: Arguments of the initial register call
            verify_code: Check that a resumed address has code on chain
        """
        self.handle = handle
        self.store = store
        self.bytecode_path = Path(bytecode_path)
        self.register_args = tuple(register_args)
        self.verify_code = verify_code
        self.last_receipt: Optional[TransactionReceipt] = None

    def bootstrap(self, force_redeploy: bool = False) -> DeploymentRecord:
        """Load the persisted deployment, or deploy and persist a new one.

        Args:
            force_redeploy: Operator intent to replace a persisted address.

        Raises:
            DeploymentFailed: If the deployment receipt has no address.
            StateStoreError: If the persisted address has no code on chain.
        """
        self.last_receipt = None
        record = self.store.load()

        if record is not None and not force_redeploy:
            if self.verify_code and not self.handle.code_exists(record.address):
                raise StateStoreError(
                    f"No contract code at persisted address {record.address}; "
                    "use --force-redeploy to deploy a new instance"
                )
            logger.info("Resuming with contract at {}", record.address)
            return record

        if record is not None:
            logger.warning("Force redeploy: replacing persisted contract {}", record.address)

        bytecode = load_bytecode(self.bytecode_path)
        receipt = self.handle.deploy(bytecode)
        self.last_receipt = receipt

        record = DeploymentRecord(
            address=receipt.contract_address,
            registered=False,
            deploy_tx_hash=receipt.tx_hash,
            deployed_at=datetime.now(timezone.utc).isoformat(),
        )
        self.store.save(record)
        return record

    def register(self, record: DeploymentRecord) -> DeploymentRecord:
        """Register a fresh deployment; a registered record is returned untouched."""
        if record.registered:
            logger.info("Contract {} already registered; skipping", record.address)
            return record

        receipt = self.contract_for(record).call(REGISTER_METHOD, *self.register_args)
        self.last_receipt = receipt
        logger.info("Register: {}", receipt.tx_hash)

        record = replace(record, registered=True, register_tx_hash=receipt.tx_hash)
        self.store.save(record)
        return record

    def contract_for(self, record: DeploymentRecord) -> ContractHandle:
        return self.handle.at(record.address)
