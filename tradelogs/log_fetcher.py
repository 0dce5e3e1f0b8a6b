"""
Raw log retrieval for a block range with retry and adaptive range splitting.
"""

import logging
from typing import List, Optional, Sequence

from .errors import RangeTooLargeError
from .models import RawLogEntry
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class LogFetcher:
    """Fetches logs for the watched contracts, bisecting ranges the provider refuses"""

    def __init__(self, chain, addresses: Sequence[str], retry_policy: Optional[RetryPolicy] = None,
                 timeout: Optional[float] = None):
        self.chain = chain
        self.addresses = list(addresses)
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout

    def fetch(self, from_block: int, to_block: int, topics: Optional[Sequence[str]] = None,
              timeout: Optional[float] = None) -> List[RawLogEntry]:
        """Logs in [from_block, to_block] whose first topic is one of topics, in chain order"""
        if to_block < from_block:
            return []
        timeout = self.timeout if timeout is None else timeout
        logs = self._fetch_range(from_block, to_block, topics, timeout)
        # Providers return chain order; a stable sort keeps that guarantee after recombining halves
        logs.sort(key=lambda entry: entry.position)
        return logs

    def _fetch_range(self, from_block: int, to_block: int, topics: Optional[Sequence[str]],
                     timeout: Optional[float]) -> List[RawLogEntry]:
        span = to_block - from_block
        try:
            return self.retry_policy.run(
                lambda: self.chain.get_logs(from_block, to_block, self.addresses, topics, timeout=timeout),
                description=f"get_logs({from_block}-{to_block})",
                span=span,
            )
        except RangeTooLargeError as e:
            if not self.retry_policy.should_split(e, span):
                raise
            mid = from_block + span // 2
            logger.info(f"[{from_block}-{to_block}] Splitting log query at {mid}: {e}")
            left = self._fetch_range(from_block, mid, topics, timeout)
            right = self._fetch_range(mid + 1, to_block, topics, timeout)
            return left + right
