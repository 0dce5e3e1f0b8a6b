"""
Block number -> wall-clock timestamp, memoized for the life of the process.
"""

import logging
from typing import Optional

from .errors import ConsistencyError
from .retry import RetryPolicy
from .single_flight import SingleFlightCache

logger = logging.getLogger(__name__)


class TimestampResolver:
    """Resolves block timestamps with a single-flight cache.

    Crawled blocks sit behind the confirmation lag, so a resolved timestamp is
    treated as final and never refetched.
    """

    def __init__(self, chain, retry_policy: Optional[RetryPolicy] = None,
                 timeout: Optional[float] = None, max_entries: Optional[int] = 100_000):
        self.chain = chain
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._cache = SingleFlightCache(self._load, name="block timestamps", max_entries=max_entries)

    def _load(self, block_number: int) -> int:
        timestamp = self.retry_policy.run(
            lambda: self.chain.get_block_timestamp(block_number, timeout=self.timeout),
            description=f"get_block({block_number})",
        )
        if timestamp is None:
            raise ConsistencyError(f"Block {block_number} not found")
        logger.debug(f"[{block_number}] Resolved block timestamp {timestamp}")
        return timestamp

    def resolve(self, block_number: int) -> int:
        return self._cache.get(int(block_number))

    @property
    def cache(self) -> SingleFlightCache:
        return self._cache
