import time
from typing import Callable, Iterator, Optional, TypeVar

from .types import TransientFetchError


T = TypeVar("T")


class RetryPolicy:
    def __init__(
        self,
        max_retries: int,
        backoff: float = 0.5,
        factor: float = 2.0,
        max_backoff: float = 8.0,
        sleep: Callable[[float], None] | None = None,
    ):
        self.max_retries = max(0, max_retries)
        self.backoff = max(0.0, backoff)
        self.factor = max(1.0, factor)
        self.max_backoff = max(self.backoff, max_backoff)
        self._sleep = sleep or time.sleep

    def delays(self) -> Iterator[float]:
        """Backoff before each retry; never decreasing, capped at max_backoff."""
        delay = self.backoff
        for _ in range(self.max_retries):
            yield min(delay, self.max_backoff)
            delay *= self.factor

    def call(
        self,
        attempt: Callable[[], T],
        on_retry: Optional[Callable[[int, TransientFetchError, float], None]] = None,
    ) -> T:
        """Run ``attempt``, retrying transient failures.

        At most ``max_retries + 1`` attempts are made; the last transient
        error is re-raised once they are used up. Any other exception
        propagates from the first attempt that raises it.
        """
        delays = self.delays()
        attempt_no = 1
        while True:
            try:
                return attempt()
            except TransientFetchError as exc:
                delay = next(delays, None)
                if delay is None:
                    raise
                if on_retry is not None:
                    on_retry(attempt_no, exc, delay)
                if delay > 0:
                    self._sleep(delay)
                attempt_no += 1
