"""
Core Exception Classes
---------------------
Application-specific exceptions. Transport-class errors are retryable,
everything else is fatal to the control loop.
"""

from typing import Any


class DoughbotError(Exception):
    """Base exception for all Doughbot errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(DoughbotError):
    """Raised when configuration or signing material is invalid or missing."""
    pass


class ChainConnectionError(DoughbotError, ConnectionError):
    """Raised when the RPC endpoint is unreachable or a transport call fails."""
    pass


class ConfirmationTimeout(ChainConnectionError):
    """Raised when a submitted transaction has no receipt yet.

    The outcome is unknown, not failed: the transaction may still be mined.
    """

    def __init__(self, message: str, tx_hash: str):
        super().__init__(message, {"tx_hash": tx_hash})
        self.tx_hash = tx_hash


class DeploymentFailed(DoughbotError):
    """Raised when a deployment receipt carries no contract address."""

    def __init__(self, message: str, tx_hash: str | None = None):
        details = {"tx_hash": tx_hash} if tx_hash else {}
        super().__init__(message, details)
        self.tx_hash = tx_hash


class CallFailed(DoughbotError):
    """Raised when a contract call reverted or could not be confirmed."""

    def __init__(
        self,
        message: str,
        method: str,
        reverted: bool = False,
        tx_hash: str | None = None,
        reason: str | None = None,
    ):
        details: dict[str, Any] = {"method": method, "reverted": reverted}
        if tx_hash:
            details["tx_hash"] = tx_hash
        if reason:
            details["reason"] = reason
        super().__init__(message, details)
        self.method = method
        self.reverted = reverted
        self.tx_hash = tx_hash
        self.reason = reason


class BalanceFetchError(DoughbotError):
    """Raised when the balance service returns an error or an unusable body."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False):
        details = {"status_code": status_code} if status_code is not None else {}
        super().__init__(message, details)
        self.status_code = status_code
        self.retryable = retryable


class StateStoreError(DoughbotError):
    """Raised when the persisted deployment record cannot be read or written."""
    pass


class ShutdownRequested(DoughbotError):
    """Raised from a backoff wait when the shutdown event fires."""
    pass
