"""
Memoizing cache with a single-flight discipline: at most one loader call is in
flight per key, concurrent callers for the same key wait on its result.
"""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class SingleFlightCache:
    """Thread-safe memoizer; failed loads are not cached"""

    def __init__(self, loader: Callable[[Hashable], Any], name: str = "cache", max_entries: Optional[int] = None):
        self._loader = loader
        self.name = name
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._values: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._inflight: Dict[Hashable, Future] = {}
        self.hits = 0
        self.loads = 0

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def get(self, key: Hashable) -> Any:
        with self._lock:
            if key in self._values:
                self.hits += 1
                return self._values[key]
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future
                self.loads += 1

        if not leader:
            logger.debug(f"{self.name}: waiting on in-flight load for {key}")
            return future.result()

        try:
            value = self._loader(key)
        except BaseException as e:
            with self._lock:
                del self._inflight[key]
            future.set_exception(e)
            raise

        with self._lock:
            self._values[key] = value
            if self.max_entries is not None and len(self._values) > self.max_entries:
                evicted, _ = self._values.popitem(last=False)
                logger.debug(f"{self.name}: evicted {evicted}")
            del self._inflight[key]
        future.set_result(value)
        return value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._values[key] = value

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
