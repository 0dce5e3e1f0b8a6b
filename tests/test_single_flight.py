#!/usr/bin/env python3
"""
Unit tests for the single-flight cache
"""

import threading
import time

import pytest

from tradelogs.single_flight import SingleFlightCache


class TestSingleFlightCache:

    def test_memoizes(self):
        calls = []
        cache = SingleFlightCache(lambda k: calls.append(k) or k * 2)

        assert cache.get(2) == 4
        assert cache.get(2) == 4
        assert calls == [2]
        assert cache.hits == 1
        assert cache.loads == 1
        assert 2 in cache

    def test_concurrent_callers_share_one_load(self):
        """Callers arriving while a load is in flight wait for it instead of loading again"""
        calls = []
        release = threading.Event()

        def loader(key):
            calls.append(key)
            release.wait(timeout=5)
            return key + 1

        cache = SingleFlightCache(loader)
        results = []
        threads = [threading.Thread(target=lambda: results.append(cache.get(10))) for _ in range(8)]
        for t in threads:
            t.start()
        # Let every thread reach the cache before the load finishes
        deadline = time.time() + 5
        while len(calls) < 1 and time.time() < deadline:
            time.sleep(0.01)
        time.sleep(0.05)
        release.set()
        for t in threads:
            t.join(timeout=5)

        assert calls == [10]
        assert results == [11] * 8

    def test_failure_not_cached(self):
        attempts = []

        def loader(key):
            attempts.append(key)
            if len(attempts) == 1:
                raise RuntimeError("provider down")
            return "ok"

        cache = SingleFlightCache(loader)
        with pytest.raises(RuntimeError):
            cache.get("a")
        assert "a" not in cache
        assert cache.get("a") == "ok"
        assert len(attempts) == 2

    def test_waiters_see_leader_failure(self):
        started = threading.Event()
        release = threading.Event()

        def loader(key):
            started.set()
            release.wait(timeout=5)
            raise RuntimeError("boom")

        cache = SingleFlightCache(loader)
        errors = []

        def call():
            try:
                cache.get("k")
            except RuntimeError as e:
                errors.append(str(e))

        leader = threading.Thread(target=call)
        leader.start()
        started.wait(timeout=5)
        follower = threading.Thread(target=call)
        follower.start()
        time.sleep(0.2)
        release.set()
        leader.join(timeout=5)
        follower.join(timeout=5)

        assert errors == ["boom", "boom"]
        assert cache.loads == 1

    def test_eviction(self):
        cache = SingleFlightCache(lambda k: k, max_entries=2)
        cache.get(1)
        cache.get(2)
        cache.get(3)

        assert len(cache) == 2
        assert 1 not in cache
        assert 3 in cache

    def test_put_and_clear(self):
        cache = SingleFlightCache(lambda k: pytest.fail("loader should not run"))
        cache.put("x", 1)
        assert cache.get("x") == 1
        cache.clear()
        assert len(cache) == 0
