#!/usr/bin/env python3
"""
Pytest configuration for crawler tests
"""

import pytest

from helpers import CONTRACT, FakeChain
from tradelogs.config import parse_config
from tradelogs.retry import RetryPolicy


@pytest.fixture
def chain():
    """Fresh fake chain per test"""
    return FakeChain(head=1000)


@pytest.fixture
def sleeps():
    """Backoff delays recorded instead of slept"""
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=2.0, sleep=sleeps.append)


@pytest.fixture
def config_data():
    return {
        'chain': {'rpc_url': 'http://localhost:8545', 'chain_id': 1},
        'contracts': {'addresses': [CONTRACT]},
        'crawler': {
            'start_block': 100,
            'confirmation_lag': 5,
            'max_window_size': 10,
            'poll_interval': 0.01,
            'enrichment_workers': 2,
        },
        'retry': {'max_attempts': 2, 'base_delay': 0, 'max_delay': 0},
    }


@pytest.fixture
def crawler_config(config_data):
    return parse_config(config_data)
