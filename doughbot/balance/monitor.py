"""
Balance Monitor
---------------
Reads the account balance from the external balance service.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import requests
from loguru import logger

from doughbot.core.config import BalanceConfig
from doughbot.core.exceptions import BalanceFetchError
from doughbot.core.retry import RetryPolicy, retry_call

BALANCES_PATH = "/api/v1/account-balances"

# Status codes worth retrying before reporting the poll as failed
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class BalanceReading:
    """A timestamped balance value. Never persisted."""
    value: Decimal
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def extract_field(body: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts and lists.

    Numeric segments index into lists, e.g. ``data.0.amount``.

    Raises:
        KeyError: If a segment does not resolve.
    """
    current = body
    for segment in path.split("."):
        if isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise KeyError(segment)
        elif isinstance(current, dict):
            if segment not in current:
                raise KeyError(segment)
            current = current[segment]
        else:
            raise KeyError(segment)
    return current


def parse_balance(body: Any, path: str) -> Decimal:
    """Extract the numeric balance from a decoded JSON body.

    Raises:
        BalanceFetchError: If the field is missing or not numeric.
    """
    try:
        raw = extract_field(body, path)
    except KeyError as e:
        raise BalanceFetchError(f"Balance field '{path}' missing from response (at {e})")

    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise BalanceFetchError(f"Balance field '{path}' is not numeric: {raw!r}")
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise BalanceFetchError(f"Balance field '{path}' is not numeric: {raw!r}")
    if not value.is_finite():
        raise BalanceFetchError(f"Balance field '{path}' is not finite: {raw!r}")
    return value


class BalanceMonitor:
    """Authenticated reader for the account-balances endpoint."""

    def __init__(
        self,
        config: BalanceConfig,
        api_token: str,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.url = config.base_url.rstrip("/") + BALANCES_PATH
        self.retry_policy = retry_policy or RetryPolicy()
        self.stop_event = stop_event

        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Authorization": f"Bearer {api_token}",
        })

    def fetch(self) -> BalanceReading:
        """Read the current balance, retrying transient failures.

        Returns:
            The balance reading.

        Raises:
            BalanceFetchError: On non-2xx status, non-JSON body or a missing
                or non-numeric balance field, once retries are exhausted.
        """
        return retry_call(
            self._fetch_once,
            self.retry_policy,
            retry_on=(BalanceFetchError,),
            description="balance fetch",
            stop_event=self.stop_event,
            should_retry=lambda e: e.retryable,
        )

    def _fetch_once(self) -> BalanceReading:
        try:
            response = self.session.get(self.url, timeout=self.config.timeout_seconds)
        except requests.RequestException as e:
            raise BalanceFetchError(f"Balance service unreachable: {e}", retryable=True)

        if not 200 <= response.status_code < 300:
            raise BalanceFetchError(
                "Balance service returned an error",
                status_code=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS,
            )

        try:
            body = response.json()
        except ValueError:
            raise BalanceFetchError("Balance service returned a non-JSON body",
                                    status_code=response.status_code)

        value = parse_balance(body, self.config.field)
        logger.debug("Balance reading: {}", value)
        return BalanceReading(value=value)

    def close(self) -> None:
        self.session.close()
