"""
sap_gateway.core.retry - Exponential backoff for Gateway calls
===============================================================

Thin policy layer over :mod:`tenacity`. Only classified-retryable failures
are retried (configured HTTP statuses and, optionally, transport errors);
everything else propagates on the first attempt. After the last attempt
the original exception is re-raised unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Optional, TypeVar
import logging
import random
import time

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from sap_gateway.core.errors import TransportError

logger = logging.getLogger("sap_gateway.retry")

T = TypeVar("T")

JITTER_RATIO = 0.2

_NETWORK_ERRORS = (
    TransportError,
    requests.ConnectionError,
    requests.Timeout,
    ConnectionError,
    TimeoutError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry configuration. Delays are in seconds.

    Parameters
    ----------
    max_attempts : int
        Total attempts including the first one
    initial_delay : float
        Delay before the second attempt (before jitter)
    max_delay : float
        Upper bound for any single delay
    backoff_factor : float
        Multiplier applied per attempt
    retryable_status_codes : frozenset of int
        HTTP statuses worth retrying
    retry_network_errors : bool
        Retry connection/timeout/DNS failures
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    retryable_status_codes: FrozenSet[int] = frozenset({429, 503, 504})
    retry_network_errors: bool = True


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retrying after the zero-based ``attempt``.

    ``min(initial * factor**attempt + jitter, max_delay)`` where jitter is
    up to 20% of the exponential part.
    """
    base = policy.initial_delay * (policy.backoff_factor ** attempt)
    jitter = base * JITTER_RATIO * rand()
    return min(base + jitter, policy.max_delay)


def _status_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def is_retryable(error: BaseException, policy: RetryPolicy) -> bool:
    """Whether ``error`` is worth another attempt under ``policy``."""
    status = _status_of(error)
    if status is not None and status in policy.retryable_status_codes:
        return True
    if policy.retry_network_errors and isinstance(error, _NETWORK_ERRORS):
        return True
    return False


class _BackoffWithJitter(wait_base):
    def __init__(self, policy: RetryPolicy, rand: Callable[[], float]) -> None:
        self.policy = policy
        self.rand = rand

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_delay(self.policy, retry_state.attempt_number - 1, self.rand)


class RetryHandler:
    """
    Run a callable with retries according to a :class:`RetryPolicy`.

    Parameters
    ----------
    policy : RetryPolicy
        Retry configuration
    on_retry : callable, optional
        ``on_retry(attempt, error, delay)`` called before each sleep;
        ``attempt`` is the 1-based number of the attempt that failed
    sleep : callable
        Sleep function (seconds)
    rand : callable
        Random source in [0, 1) used for jitter

    Examples
    --------
    >>> handler = RetryHandler(RetryPolicy(max_attempts=5))
    >>> payload = handler.call(executor.execute, config)
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.on_retry = on_retry
        self.sleep = sleep
        self.rand = rand

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Attempt %s/%s failed (%s); retrying in %.2fs",
            retry_state.attempt_number,
            self.policy.max_attempts,
            error,
            delay,
        )
        if self.on_retry is not None:
            self.on_retry(retry_state.attempt_number, error, delay)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``fn(*args, **kwargs)``, retrying retryable failures."""
        retrying = Retrying(
            stop=stop_after_attempt(max(1, int(self.policy.max_attempts))),
            wait=_BackoffWithJitter(self.policy, self.rand),
            retry=retry_if_exception(lambda e: is_retryable(e, self.policy)),
            sleep=self.sleep,
            reraise=True,
            before_sleep=self._before_sleep,
        )
        return retrying(fn, *args, **kwargs)
