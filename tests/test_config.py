#!/usr/bin/env python3
"""
Unit tests for configuration loading
"""

import pytest

from helpers import CONTRACT, RESERVE_A, UNKNOWN_TOPIC, reserve_id
from tradelogs.config import load_config, parse_config
from tradelogs.errors import ConfigError
from tradelogs.events import KNOWN_SCHEMAS, KYBER_TRADE_V4

CONFIG_YAML = """
chain:
  rpc_url: ${{TEST_RPC_URL}}
  chain_id: 1
  request_timeout: 10
contracts:
  addresses:
    - "{contract}"
events:
  - kyber_trade_v4
  - decoder: fee_distributed_v4
    topic: "{topic}"
crawler:
  start_block: 10403227
  confirmation_lag: 7
  volume_excluded_reserves:
    - "{reserve}"
    - "{reserve_id}"
database:
  url: ${{TEST_DATABASE_URL}}
log_level: debug
"""


class TestLoadConfig:

    @pytest.fixture(autouse=True)
    def setup(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_RPC_URL", "https://rpc.example.org")
        monkeypatch.setenv("TEST_DATABASE_URL", "postgresql://crawler@localhost/tradelogs")
        self.path = tmp_path / "config.yaml"
        self.path.write_text(CONFIG_YAML.format(
            contract=CONTRACT.lower(), topic=UNKNOWN_TOPIC, reserve=RESERVE_A.lower(), reserve_id=reserve_id(4),
        ))

    def test_env_expansion(self):
        config = load_config(str(self.path))
        assert config.chain.rpc_url == "https://rpc.example.org"
        assert config.database.url == "postgresql://crawler@localhost/tradelogs"

    def test_values(self):
        config = load_config(str(self.path))
        assert config.contracts.addresses == [CONTRACT]
        assert config.crawler.start_block == 10403227
        assert config.crawler.max_window_size == 100
        assert config.crawler.volume_excluded_reserves == [RESERVE_A, reserve_id(4)]
        assert config.log_level == "DEBUG"
        assert config.retry.policy().max_attempts == 5

    def test_event_bindings(self):
        config = load_config(str(self.path))
        assert config.event_bindings() == [('kyber_trade_v4', None), ('fee_distributed_v4', UNKNOWN_TOPIC)]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read config"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("chain: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(path))


class TestParseConfig:

    def base(self, **overrides):
        data = {'chain': {'rpc_url': 'http://localhost:8545'}, 'contracts': {'addresses': [CONTRACT]}}
        data.update(overrides)
        return data

    def test_defaults(self):
        config = parse_config(self.base())
        assert [b.decoder for b in config.events] == list(KNOWN_SCHEMAS)
        assert config.crawler.confirmation_lag == 7
        assert config.crawler.enrichment_workers == 4
        assert config.database.url is None
        assert config.redis.stream_key == "tradelogs:events"

    def test_int_address(self):
        """YAML reads unquoted hex as an int"""
        config = parse_config(self.base(contracts={'addresses': int(CONTRACT, 16)}))
        assert config.contracts.addresses == [CONTRACT]

    def test_no_addresses(self):
        with pytest.raises(ConfigError):
            parse_config(self.base(contracts={'addresses': []}))

    def test_unknown_decoder(self):
        with pytest.raises(ConfigError, match="unknown decoder"):
            parse_config(self.base(events=['kyber_trade_v9']))

    def test_invalid_window_size(self):
        with pytest.raises(ConfigError):
            parse_config(self.base(crawler={'max_window_size': 0}))

    def test_invalid_log_level(self):
        with pytest.raises(ConfigError):
            parse_config(self.base(log_level='chatty'))

    def test_missing_rpc(self):
        with pytest.raises(ConfigError):
            parse_config({'contracts': {'addresses': [CONTRACT]}})

    def test_topic_binding_default(self):
        config = parse_config(self.base(events=['kyber_trade_v4']))
        assert config.event_bindings() == [('kyber_trade_v4', None)]
        assert KYBER_TRADE_V4.name == config.events[0].decoder

    def test_unset_env_urls(self):
        """URLs whose variable was not set are treated as not configured"""
        config = parse_config(self.base(database={'url': '${DATABASE_URL}'}, redis={'url': ''}))
        assert config.database.url is None
        assert config.redis.url is None
