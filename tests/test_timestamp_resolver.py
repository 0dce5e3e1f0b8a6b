#!/usr/bin/env python3
"""
Unit tests for TimestampResolver
"""

import pytest

from tradelogs.errors import ConsistencyError, TransientError
from tradelogs.timestamp_resolver import TimestampResolver


class TestTimestampResolver:

    @pytest.fixture(autouse=True)
    def setup(self, chain, retry_policy):
        self.chain = chain
        self.resolver = TimestampResolver(chain, retry_policy)

    def test_resolve(self):
        self.chain.add_block(500, 1_700_000_000)
        assert self.resolver.resolve(500) == 1_700_000_000

    def test_cached(self):
        """Each block is fetched once however often it is asked for"""
        self.chain.add_block(500, 1_700_000_000)
        for _ in range(5):
            self.resolver.resolve(500)
        assert self.chain.calls['get_block'] == 1
        assert self.resolver.cache.hits == 4

    def test_missing_block(self):
        with pytest.raises(ConsistencyError, match="Block 404 not found"):
            self.resolver.resolve(404)
        assert 404 not in self.resolver.cache

    def test_transient_then_success(self):
        self.chain.add_block(500, 1_700_000_000)
        self.chain.failures['get_block'] = 1
        assert self.resolver.resolve(500) == 1_700_000_000
        assert self.chain.calls['get_block'] == 2

    def test_transient_exhausted_not_cached(self):
        self.chain.add_block(500, 1_700_000_000)
        self.chain.failures['get_block'] = 3
        with pytest.raises(TransientError):
            self.resolver.resolve(500)
        assert self.resolver.resolve(500) == 1_700_000_000
