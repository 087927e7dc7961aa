"""Shared plumbing for outbound services.

The email hand-off is the only collaborator today. It gets from here:
a retry loop driven by ``RetryPolicy``, a sliding-window ``RateLimiter``,
and the ``status()`` report printed by ``agencyflow.py --check``.
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, TypeVar

from src.core.exceptions import IntegrationError
from src.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a transient failure is retried.

    ``max_retries`` counts retries after the first attempt. Delays start at
    ``base_delay`` and double up to ``max_delay``.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    transient: tuple[type[BaseException], ...] = (Exception,)

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delays(self) -> Iterator[float]:
        delay = self.base_delay
        for _ in range(self.max_retries):
            yield delay
            delay = min(delay * 2, self.max_delay)


class IntegrationBase(ABC):
    """An outbound service the runner depends on.

    Subclasses set ``name`` and may override ``retry_policy``.
    """

    name: str = "integration"
    retry_policy: RetryPolicy = RetryPolicy()

    @abstractmethod
    def health_check(self) -> bool:
        """True when the service answers."""

    @abstractmethod
    def is_configured(self) -> bool:
        """True when endpoint and credentials are present."""

    def status(self) -> dict[str, Any]:
        """Name, configuration and reachability in one dict."""
        configured = self.is_configured()
        return {
            "name": self.name,
            "configured": configured,
            "healthy": self.health_check() if configured else False,
        }

    def with_retry(
        self,
        func: Callable[[], T],
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        exceptions: Optional[tuple[type[BaseException], ...]] = None,
    ) -> T:
        """Call ``func`` until it succeeds or the policy gives up.

        Keyword arguments override the matching field of ``retry_policy``.
        Exceptions outside the transient set propagate on the first raise.

        Raises:
            IntegrationError: Every attempt raised a transient error
        """
        base = self.retry_policy
        policy = RetryPolicy(
            max_retries=base.max_retries if max_retries is None else max_retries,
            base_delay=base.base_delay if base_delay is None else base_delay,
            max_delay=base.max_delay if max_delay is None else max_delay,
            transient=base.transient if exceptions is None else exceptions,
        )

        pauses = policy.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return func()
            except policy.transient as e:
                pause = next(pauses, None)
                if pause is None:
                    raise IntegrationError(
                        f"{self.name}: failed after {policy.attempts} attempts: {e}"
                    ) from e
                logger.warning(
                    f"{self.name}: attempt {attempt}/{policy.attempts} failed, "
                    f"retrying in {pause}s: {e}",
                    extra={"context": {"integration": self.name, "attempt": attempt}},
                )
                time.sleep(pause)


class RateLimiter:
    """At most ``calls_per_minute`` calls in any sixty-second window."""

    WINDOW = 60.0

    def __init__(self, calls_per_minute: int = 60, clock: Callable[[], float] = time.monotonic):
        self.calls_per_minute = calls_per_minute
        self._clock = clock
        self._calls: deque[float] = deque()

    def wait_if_needed(self) -> float:
        """Sleep until one more call fits, then record it.

        Returns:
            Seconds slept
        """
        now = self._clock()
        while self._calls and now - self._calls[0] >= self.WINDOW:
            self._calls.popleft()

        slept = 0.0
        if len(self._calls) >= self.calls_per_minute:
            slept = max(0.0, self.WINDOW - (now - self._calls[0]))
            if slept:
                logger.debug(f"Rate limit reached, sleeping {slept:.1f}s")
                time.sleep(slept)
            self._calls.popleft()

        self._calls.append(self._clock())
        return slept
