"""
Deployment State Store
----------------------
Durable record of the deployed contract address. Read at startup, written
with write-to-temp plus atomic replace so a crash never leaves a torn file.
"""

import json
import os
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from loguru import logger
from web3 import Web3

from doughbot.core.exceptions import StateStoreError
from .types import DeploymentRecord


class DeploymentStore:
    """JSON file store for a single DeploymentRecord.

    A file holding only an address string (the legacy format) is accepted and
    treated as an already-registered deployment.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[DeploymentRecord]:
        """Read the persisted record, or None if nothing was persisted.

        Raises:
            StateStoreError: If the file exists but cannot be understood.
        """
        if not self.path.exists():
            return None

        try:
            content = self.path.read_text().strip()
        except OSError as e:
            raise StateStoreError(f"Failed to read deployment state {self.path}: {e}")

        if not content:
            raise StateStoreError(f"Deployment state file is empty: {self.path}")

        if content.startswith("{"):
            record = self._parse_json(content)
        else:
            record = DeploymentRecord(address=content, registered=True)

        if not Web3.is_address(record.address):
            raise StateStoreError(f"Invalid contract address in {self.path}: {record.address}")

        record = DeploymentRecord(**{**asdict(record), "address": Web3.to_checksum_address(record.address)})
        logger.info("Loaded deployment state: {} (registered: {})", record.address, record.registered)
        return record

    def _parse_json(self, content: str) -> DeploymentRecord:
        try:
            data = json.loads(content)
            return DeploymentRecord(**data)
        except (json.JSONDecodeError, TypeError) as e:
            raise StateStoreError(f"Corrupt deployment state {self.path}: {e}")

    def save(self, record: DeploymentRecord) -> None:
        """Atomically replace the persisted record."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(asdict(record), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StateStoreError(f"Failed to write deployment state {self.path}: {e}")

        logger.info("Deployment state saved to {}", self.path)
