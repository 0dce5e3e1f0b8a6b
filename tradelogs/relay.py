#!/usr/bin/env python3
"""
Outbox relay: publishes the crawler's outbox rows to a Redis stream.

Runs as its own process. Rows are claimed with SKIP LOCKED so several relays
can share one outbox; a row that keeps failing is parked on the dead-letter
stream and marked published so it no longer blocks the ones behind it.
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import psycopg2
import redis
from psycopg2.extras import RealDictCursor

from .config import configure_logging, load_config
from .errors import ConfigError

logger = logging.getLogger(__name__)

STREAM_MAXLEN = 100_000
MAX_IDLE_SLEEP_MS = 5000

CLAIM_BATCH = """
    SELECT id, type, chain_id, block_number, tx_hash, log_index,
           contract_address, timestamp, payload_json, uniq, ver,
           retries, last_error
    FROM outbox_events
    WHERE published_at IS NULL
    ORDER BY id
    LIMIT %s
    FOR UPDATE SKIP LOCKED
"""

MARK_PUBLISHED = "UPDATE outbox_events SET published_at = NOW() WHERE id = %s"

RECORD_FAILURE = """
    UPDATE outbox_events
    SET retries = retries + 1, last_error = %s
    WHERE id = %s
"""


@dataclass
class OutboxRow:
    id: int
    type: str
    chain_id: int
    block_number: int
    tx_hash: str
    log_index: int
    contract_address: Optional[str]
    timestamp: Optional[int]
    payload_json: Any
    uniq: str
    ver: int
    retries: int = 0
    last_error: Optional[str] = None

    @classmethod
    def from_db(cls, row: Dict[str, Any]) -> "OutboxRow":
        return cls(**{k: row.get(k) for k in cls.__dataclass_fields__})

    def stream_fields(self) -> Dict[str, str]:
        """XADD field map; Redis stream values are flat strings"""
        payload = self.payload_json
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        fields = {
            'type': self.type,
            'chain_id': str(self.chain_id),
            'block_number': str(self.block_number),
            'tx_hash': self.tx_hash or '',
            'log_index': str(self.log_index),
            'contract_address': self.contract_address or '',
            'uniq': self.uniq,
            'ver': str(self.ver),
            'payload_json': payload,
        }
        if self.timestamp is not None:
            fields['timestamp'] = str(self.timestamp)
        return fields


class OutboxRelay:
    """Moves committed outbox rows onto a Redis stream, at least once"""

    def __init__(self, db_conn, redis_client, stream_key: str = 'tradelogs:events',
                 dlq_key: str = 'tradelogs:events:dlq', batch_size: int = 100,
                 poll_interval_ms: int = 300, retry_limit: int = 5):
        self.db_conn = db_conn
        self.redis_client = redis_client
        self.stream_key = stream_key
        self.dlq_key = dlq_key
        self.batch_size = batch_size
        self.poll_interval_ms = poll_interval_ms
        self.retry_limit = retry_limit
        self._stop = threading.Event()

    @classmethod
    def from_urls(cls, database_url: str, redis_url: str, **kwargs) -> "OutboxRelay":
        db_conn = psycopg2.connect(database_url, cursor_factory=RealDictCursor)
        db_conn.autocommit = False
        redis_client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=5,
        )
        relay = cls(db_conn, redis_client, **kwargs)
        relay.ensure_stream_exists()
        logger.info(f"✅ Relay ready: stream={relay.stream_key} dlq={relay.dlq_key} batch={relay.batch_size}")
        return relay

    def ensure_stream_exists(self) -> None:
        try:
            self.redis_client.xinfo_stream(self.stream_key)
        except redis.ResponseError:
            # XADD + XDEL leaves an empty stream behind for consumer groups to attach to
            entry_id = self.redis_client.xadd(self.stream_key, {'init': 'true'})
            self.redis_client.xdel(self.stream_key, entry_id)
            logger.info(f"Created stream {self.stream_key}")

    def claim_batch(self) -> List[OutboxRow]:
        with self.db_conn.cursor() as cursor:
            cursor.execute(CLAIM_BATCH, (self.batch_size,))
            return [OutboxRow.from_db(dict(row)) for row in cursor.fetchall()]

    def _execute(self, sql: str, params: tuple) -> None:
        with self.db_conn.cursor() as cursor:
            cursor.execute(sql, params)

    def publish(self, row: OutboxRow) -> bool:
        try:
            entry_id = self.redis_client.xadd(
                self.stream_key, row.stream_fields(), maxlen=STREAM_MAXLEN, approximate=True
            )
        except redis.RedisError as e:
            logger.error(f"[{row.block_number}] Failed to publish {row.uniq}: {e}")
            return False
        logger.debug(f"[{row.block_number}] Published {row.uniq} as {entry_id}")
        return True

    def dead_letter(self, row: OutboxRow) -> None:
        self.redis_client.xadd(self.dlq_key, {
            'original_event': json.dumps(asdict(row), default=str),
            'failure_time': str(int(time.time())),
            'retries': str(row.retries),
            'last_error': row.last_error or 'Unknown',
        })
        self._execute(MARK_PUBLISHED, (row.id,))
        logger.warning(f"[{row.block_number}] {row.uniq} moved to {self.dlq_key} after {row.retries} retries")

    def process_batch(self) -> int:
        """Relay one claimed batch; the claim is held until commit"""
        rows = self.claim_batch()
        relayed = 0
        try:
            for row in rows:
                if row.retries >= self.retry_limit:
                    self.dead_letter(row)
                    relayed += 1
                elif self.publish(row):
                    self._execute(MARK_PUBLISHED, (row.id,))
                    relayed += 1
                else:
                    self._execute(RECORD_FAILURE, ("Redis publish failed", row.id))
        except (psycopg2.Error, redis.RedisError) as e:
            logger.error(f"Relay batch aborted after {relayed}/{len(rows)} rows: {e}")
            self.db_conn.rollback()
            return 0

        self.db_conn.commit()
        if relayed:
            logger.info(f"📤 Relayed {relayed}/{len(rows)} outbox rows to {self.stream_key}")
        return relayed

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:
        logger.info(f"🚀 Starting outbox relay (poll={self.poll_interval_ms}ms, retry_limit={self.retry_limit})")
        idle_polls = 0
        while not self._stop.is_set():
            try:
                relayed = self.process_batch()
            except (psycopg2.Error, redis.RedisError) as e:
                logger.error(f"Relay loop error: {e}")
                relayed = 0
            # Back off linearly while the outbox is empty
            idle_polls = 0 if relayed else idle_polls + 1
            sleep_ms = min(self.poll_interval_ms * max(idle_polls, 1), MAX_IDLE_SLEEP_MS)
            self._stop.wait(sleep_ms / 1000.0)
        logger.info("🛑 Outbox relay stopped")

    def close(self) -> None:
        self.db_conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Relay crawler outbox rows to Redis Streams')
    parser.add_argument('--config', '-c', help='Path to config file', default='config.yaml')
    parser.add_argument('--batch-size', type=int, default=100)
    parser.add_argument('--poll-interval', type=int, default=300, help='Poll interval in ms')
    parser.add_argument('--retry-limit', type=int, default=5)
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        configure_logging("INFO")
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)
    configure_logging(config.log_level)

    if not config.database.url or not config.redis.url:
        logger.error("Relay needs both database.url and redis.url")
        sys.exit(1)

    try:
        relay = OutboxRelay.from_urls(
            config.database.url,
            config.redis.url,
            stream_key=config.redis.stream_key,
            dlq_key=config.redis.dlq_key,
            batch_size=args.batch_size,
            poll_interval_ms=args.poll_interval,
            retry_limit=args.retry_limit,
        )
    except (psycopg2.Error, redis.RedisError) as e:
        logger.error(f"Failed to start relay: {e}")
        sys.exit(1)

    signal.signal(signal.SIGTERM, lambda signum, frame: relay.stop())
    try:
        relay.run()
    except KeyboardInterrupt:
        logger.info("Relay stopped by user")
    finally:
        relay.close()


if __name__ == '__main__':
    main()
