"""
sap_gateway.core.throttle - Token-bucket request throttling
============================================================

One :class:`ThrottleManager` per execution scope. It is never shared
process-wide, so unrelated tenants/workflows don't throttle each other.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional
import logging
import math
import threading
import time

from sap_gateway.core.errors import ValidationError

logger = logging.getLogger("sap_gateway.throttle")

STRATEGIES = ("delay", "drop")


class ThrottleManager:
    """
    Token bucket allowing ``burst_size`` immediate requests, refilled at
    ``max_requests_per_second``.

    Parameters
    ----------
    max_requests_per_second : float
        Sustained rate
    strategy : str
        "delay" blocks until a token is free; "drop" denies immediately
    burst_size : int
        Bucket capacity
    clock : callable
        Monotonic time source (seconds)
    sleep : callable
        Sleep function (seconds)
    on_throttle : callable, optional
        ``on_throttle(wait_seconds)`` called whenever a request is held
        back (``0.0`` for a drop)

    Examples
    --------
    >>> throttle = ThrottleManager(10, "drop", burst_size=2)
    >>> throttle.acquire(), throttle.acquire(), throttle.acquire()
    (True, True, False)
    """

    def __init__(
        self,
        max_requests_per_second: float = 10.0,
        strategy: str = "delay",
        burst_size: int = 5,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_throttle: Optional[Callable[[float], None]] = None,
    ) -> None:
        if max_requests_per_second <= 0:
            raise ValidationError("max_requests_per_second must be positive")
        if burst_size < 1:
            raise ValidationError("burst_size must be at least 1")
        if strategy not in STRATEGIES:
            raise ValidationError(f"strategy must be one of {STRATEGIES}")

        self.max_requests_per_second = float(max_requests_per_second)
        self.strategy = strategy
        self.burst_size = int(burst_size)
        self.clock = clock
        self.sleep = sleep
        self.on_throttle = on_throttle

        self._tokens = self.burst_size
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self.clock()
        earned = math.floor((now - self._last_refill) * self.max_requests_per_second)
        if earned > 0:
            self._tokens = min(self.burst_size, self._tokens + earned)
            if self._tokens >= self.burst_size:
                self._last_refill = now
            else:
                # keep the unspent fraction of a token interval
                self._last_refill += earned / self.max_requests_per_second

    def acquire(self) -> bool:
        """
        Take a token.

        Returns True when the request may proceed (possibly after waiting),
        False when it was dropped.
        """
        wait = 1.0 / self.max_requests_per_second
        while True:
            with self._lock:
                self._refill()
                if self._tokens > 0:
                    self._tokens -= 1
                    return True
                if self.strategy == "drop":
                    logger.debug("Throttle bucket empty, dropping request")
                    if self.on_throttle is not None:
                        self.on_throttle(0.0)
                    return False
            logger.debug("Throttle bucket empty, waiting %.3fs", wait)
            if self.on_throttle is not None:
                self.on_throttle(wait)
            self.sleep(wait)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            self._refill()
            return {
                "tokens": self._tokens,
                "burst_size": self.burst_size,
                "max_requests_per_second": self.max_requests_per_second,
                "strategy": self.strategy,
            }

    def reset(self) -> None:
        with self._lock:
            self._tokens = self.burst_size
            self._last_refill = self.clock()
