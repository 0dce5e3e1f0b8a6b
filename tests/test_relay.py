#!/usr/bin/env python3
"""
Unit tests for the outbox relay with mocked Postgres and Redis
"""

from unittest.mock import MagicMock

import psycopg2
import pytest
import redis

from helpers import CONTRACT, tx_hash
from tradelogs.relay import OutboxRelay, OutboxRow


def outbox_event(event_id=1, retries=0):
    return {
        'id': event_id,
        'type': 'trade',
        'chain_id': 1,
        'block_number': 500,
        'tx_hash': tx_hash(event_id),
        'log_index': 2,
        'contract_address': CONTRACT,
        'timestamp': 1_650_000_000,
        'payload_json': {'transaction_fee': "1050000000000000"},
        'uniq': f"1:{tx_hash(event_id)[2:]}:2",
        'ver': 1,
        'retries': retries,
        'last_error': None,
    }


class TestOutboxRelay:

    @pytest.fixture(autouse=True)
    def setup(self):
        self.db_conn = MagicMock()
        self.cursor = MagicMock()
        self.db_conn.cursor.return_value.__enter__.return_value = self.cursor
        self.redis = MagicMock()
        self.relay = OutboxRelay(self.db_conn, self.redis, stream_key='test:events', dlq_key='test:dlq', retry_limit=3)

    def executed_sql(self):
        return [c[0][0] for c in self.cursor.execute.call_args_list]

    def test_empty_batch(self):
        self.cursor.fetchall.return_value = []
        assert self.relay.process_batch() == 0
        self.redis.xadd.assert_not_called()
        self.db_conn.commit.assert_called_once()

    def test_publish(self):
        self.cursor.fetchall.return_value = [outbox_event(1), outbox_event(2)]

        assert self.relay.process_batch() == 2

        assert self.redis.xadd.call_count == 2
        stream, fields = self.redis.xadd.call_args_list[0][0]
        assert stream == 'test:events'
        assert fields['type'] == 'trade'
        assert fields['block_number'] == '500'
        assert fields['timestamp'] == '1650000000'
        assert fields['payload_json'] == '{"transaction_fee": "1050000000000000"}'
        assert all(isinstance(v, str) for v in fields.values())
        assert sum("SET published_at = NOW()" in s for s in self.executed_sql()) == 2
        self.db_conn.commit.assert_called_once()

    def test_event_without_timestamp(self):
        event = outbox_event(1)
        event['timestamp'] = None
        event['type'] = 'fee'
        self.cursor.fetchall.return_value = [event]
        self.relay.process_batch()
        fields = self.redis.xadd.call_args[0][1]
        assert 'timestamp' not in fields

    def test_publish_failure_increments_retry(self):
        self.cursor.fetchall.return_value = [outbox_event(1)]
        self.redis.xadd.side_effect = redis.ConnectionError("redis down")

        assert self.relay.process_batch() == 0

        sql = self.executed_sql()
        assert any("retries = retries + 1" in s for s in sql)
        assert not any("published_at = NOW()" in s for s in sql)

    def test_retry_limit_moves_to_dlq(self):
        self.cursor.fetchall.return_value = [outbox_event(1, retries=3)]

        assert self.relay.process_batch() == 1

        stream, fields = self.redis.xadd.call_args[0]
        assert stream == 'test:dlq'
        assert fields['retries'] == '3'
        assert any("published_at = NOW()" in s for s in self.executed_sql())

    def test_database_error_rolls_back(self):
        self.cursor.fetchall.return_value = [outbox_event(1)]
        self.cursor.execute.side_effect = [None, psycopg2.OperationalError("gone")]

        assert self.relay.process_batch() == 0
        self.db_conn.rollback.assert_called_once()
        self.db_conn.commit.assert_not_called()

    def test_ensure_stream_creates_missing(self):
        self.redis.xinfo_stream.side_effect = redis.ResponseError("no such key")
        self.redis.xadd.return_value = "1-0"
        self.relay.ensure_stream_exists()
        self.redis.xdel.assert_called_once_with('test:events', "1-0")

    def test_run_exits_when_stopped(self):
        self.relay.stop()
        self.relay.run()
        self.cursor.execute.assert_not_called()


class TestOutboxRow:

    def test_stream_fields_from_json_string(self):
        """psycopg2 may hand back JSONB already decoded or as text"""
        event = outbox_event(1)
        event['payload_json'] = '{"a": "1"}'
        event['contract_address'] = None
        fields = OutboxRow.from_db(event).stream_fields()
        assert fields['payload_json'] == '{"a": "1"}'
        assert fields['contract_address'] == ''
