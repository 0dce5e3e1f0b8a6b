"""
Retry/backoff policy shared by the log fetcher, receipt fetcher and
timestamp resolver.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from .errors import RangeTooLargeError, TransientError

logger = logging.getLogger(__name__)

# Provider error messages that mean "ask for a smaller range"
SPLIT_MARKERS = (
    'too many results',
    'query returned more than',
    'response size',
    'limit exceeded',
    'block range',
    'timeout',
    'timed out',
    'gateway',
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff plus the range-splitting predicate"""
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    min_split_span: int = 0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delays(self) -> Iterator[float]:
        """Backoff schedule between attempts (max_attempts - 1 values)"""
        delay = self.base_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.multiplier

    def should_split(self, exc: BaseException, span: int) -> bool:
        """A range query failing with a size/timeout error is bisected while span allows"""
        return isinstance(exc, RangeTooLargeError) and span > self.min_split_span

    def run(self, fn: Callable[[], Any], description: str = "call", span: Optional[int] = None) -> Any:
        """Call fn, retrying TransientError with backoff.

        When span is given and the failure is split-worthy, the error is raised
        immediately so the caller can bisect instead of retrying the same range.
        Non-transient errors propagate on the first occurrence.
        """
        delays = self.delays()
        attempt = 1
        while True:
            try:
                return fn()
            except TransientError as e:
                if span is not None and self.should_split(e, span):
                    raise
                delay = next(delays, None)
                if delay is None:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                logger.warning(f"{description} attempt {attempt}/{self.max_attempts} failed: {e}; retrying in {delay:.1f}s")
                self.sleep(delay)
                attempt += 1
