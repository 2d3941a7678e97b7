"""
Bounded Exponential Backoff
---------------------------
Retries transient failures a bounded number of times using tenacity. Backoff
waits block on the shutdown event so a stop request interrupts them.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .exceptions import ShutdownRequested

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy: attempt count and delay schedule."""
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            multiplier=config.multiplier,
            max_delay=config.max_delay_seconds,
        )

    def wait(self) -> wait_exponential:
        return wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows the given (1-based) attempt."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


def interruptible_sleep(stop_event: Optional[threading.Event], description: str) -> Callable[[float], None]:
    """Sleep function for tenacity that aborts when the stop event fires."""

    def _sleep(seconds: float) -> None:
        if stop_event is None:
            time.sleep(seconds)
        elif stop_event.wait(seconds):
            raise ShutdownRequested(f"Shutdown requested while retrying {description}")

    return _sleep


def _log_before_sleep(description: str, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            "{} failed (attempt {}/{}): {}; retrying in {:.1f}s",
            description,
            retry_state.attempt_number,
            policy.max_attempts,
            retry_state.outcome.exception(),
            retry_state.next_action.sleep,
        )

    return _before_sleep


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    description: str,
    stop_event: Optional[threading.Event] = None,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Call `func`, retrying on `retry_on` exceptions with exponential backoff.

    Args:
        func: Zero-argument callable to invoke.
        policy: Attempt bound and delay schedule.
        retry_on: Exception types considered transient.
        description: Operation name for log messages.
        stop_event: Shutdown event; a set event aborts the backoff wait.
        should_retry: Optional predicate to veto retrying a caught exception.

    Returns:
        The value returned by `func`.

    Raises:
        The last transient exception once attempts are exhausted, any
        non-transient exception immediately, or ShutdownRequested if the
        stop event fires during a backoff wait.
    """
    retry_condition = retry_if_exception_type(retry_on)
    if should_retry is not None:
        retry_condition = retry_condition & retry_if_exception(should_retry)

    retryer = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait(),
        retry=retry_condition,
        sleep=interruptible_sleep(stop_event, description),
        before_sleep=_log_before_sleep(description, policy),
        reraise=True,
    )
    try:
        return retryer(func)
    except retry_on as e:
        attempts = retryer.statistics.get("attempt_number", 1)
        if attempts >= policy.max_attempts:
            logger.error("{} failed after {} attempts: {}", description, attempts, e)
        raise
