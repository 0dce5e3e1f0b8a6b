"""
PostgreSQL storage: JSONB documents keyed by (tx_hash, log_index), the reserve
registry snapshot and the crawler checkpoint, written in one transaction per
window.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from ..errors import PersistenceError
from ..event_publisher import EventPublisher
from ..models import (
    FeeDistributionRecord,
    OutputRecord,
    RegistryUpdateRecord,
    ReserveEntry,
    ReserveRegistryState,
    TradeRecord,
)
from .base import Storage

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

UPSERT_TRADES = """
    INSERT INTO trade_logs (tx_hash, log_index, block_number, timestamp, data)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (tx_hash, log_index) DO UPDATE SET
        block_number = EXCLUDED.block_number,
        timestamp = EXCLUDED.timestamp,
        data = EXCLUDED.data
"""

UPSERT_FEES = """
    INSERT INTO fee_distributions (tx_hash, log_index, block_number, data)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (tx_hash, log_index) DO UPDATE SET
        block_number = EXCLUDED.block_number,
        data = EXCLUDED.data
"""

UPSERT_REGISTRY_EVENTS = """
    INSERT INTO reserve_registry_events (tx_hash, log_index, block_number, data)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (tx_hash, log_index) DO UPDATE SET
        block_number = EXCLUDED.block_number,
        data = EXCLUDED.data
"""

UPSERT_RESERVES = """
    INSERT INTO reserve_registry (reserve_id, reserve_address, rebate_wallet, updated_block, active, updated_at)
    VALUES (%s, %s, %s, %s, %s, NOW())
    ON CONFLICT (reserve_id) DO UPDATE SET
        reserve_address = EXCLUDED.reserve_address,
        rebate_wallet = EXCLUDED.rebate_wallet,
        updated_block = EXCLUDED.updated_block,
        active = EXCLUDED.active,
        updated_at = NOW()
"""

UPSERT_CHECKPOINT = """
    INSERT INTO crawler_state (crawler_name, last_block, updated_at)
    VALUES (%s, %s, NOW())
    ON CONFLICT (crawler_name) DO UPDATE SET
        last_block = EXCLUDED.last_block,
        updated_at = NOW()
"""


class PostgresStorage(Storage):
    """psycopg2-backed storage with idempotent upserts"""

    def __init__(self, database_url: str, crawler_name: str = "tradelogs_v4", chain_id: int = 1,
                 publish_outbox: bool = True, connect: bool = True):
        self.database_url = database_url
        self.crawler_name = crawler_name
        self.publisher = EventPublisher(chain_id) if publish_outbox else None
        self.db_conn = None
        if connect:
            self._connect()

    def _connect(self) -> None:
        """Initialize database connection"""
        try:
            self.db_conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
            self.db_conn.autocommit = False
            logger.info("Database connection established")
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to connect to database: {e}") from e

    def _ensure_connection(self):
        if self.db_conn is None or self.db_conn.closed:
            logger.warning("Database connection lost, reconnecting")
            self._connect()
        return self.db_conn

    def init_schema(self) -> None:
        """Create tables from schema.sql"""
        conn = self._ensure_connection()
        with open(SCHEMA_PATH) as f:
            ddl = f.read()
        try:
            with conn:
                with conn.cursor() as cursor:
                    cursor.execute(ddl)
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to initialize schema: {e}") from e
        logger.info("✅ Schema initialized")

    def last_checkpoint(self) -> Optional[int]:
        conn = self._ensure_connection()
        try:
            with conn:
                with conn.cursor() as cursor:
                    cursor.execute(
                        "SELECT last_block FROM crawler_state WHERE crawler_name = %s",
                        (self.crawler_name,)
                    )
                    row = cursor.fetchone()
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to read checkpoint: {e}") from e
        return int(row['last_block']) if row else None

    def load_reserve_registry(self) -> ReserveRegistryState:
        conn = self._ensure_connection()
        try:
            with conn:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT reserve_id, reserve_address, rebate_wallet, updated_block, active FROM reserve_registry")
                    rows = cursor.fetchall()
        except psycopg2.Error as e:
            raise PersistenceError(f"Failed to load reserve registry: {e}") from e
        state = ReserveRegistryState()
        for row in rows:
            state.reserves[row['reserve_id']] = ReserveEntry(
                reserve_address=row['reserve_address'],
                rebate_wallet=row['rebate_wallet'],
                updated_block=int(row['updated_block']),
                active=bool(row['active']),
            )
        logger.info(f"📚 Loaded {len(state)} reserves from registry")
        return state

    def persist_window(self, window, records: Sequence[OutputRecord],
                       registry_state: ReserveRegistryState) -> None:
        trades = [
            (r.transaction_hash, r.log_index, r.block_number, r.timestamp, Json(r.to_dict()))
            for r in records if isinstance(r, TradeRecord)
        ]
        fees = [
            (r.transaction_hash, r.log_index, r.block_number, Json(r.to_dict()))
            for r in records if isinstance(r, FeeDistributionRecord)
        ]
        registry_events = [
            (r.transaction_hash, r.log_index, r.block_number, Json(r.to_dict()))
            for r in records if isinstance(r, RegistryUpdateRecord)
        ]
        # Only reserves touched in this window need rewriting
        reserves = [
            (reserve_id, entry.reserve_address, entry.rebate_wallet, entry.updated_block, entry.active)
            for reserve_id, entry in registry_state.reserves.items()
            if window.from_block <= entry.updated_block <= window.to_block
        ]

        conn = self._ensure_connection()
        try:
            with conn:
                with conn.cursor() as cursor:
                    if trades:
                        cursor.executemany(UPSERT_TRADES, trades)
                    if fees:
                        cursor.executemany(UPSERT_FEES, fees)
                    if registry_events:
                        cursor.executemany(UPSERT_REGISTRY_EVENTS, registry_events)
                    if reserves:
                        cursor.executemany(UPSERT_RESERVES, reserves)
                    if self.publisher is not None:
                        self.publisher.insert_outbox_rows(cursor, records)
                    cursor.execute(UPSERT_CHECKPOINT, (self.crawler_name, window.to_block))
        except psycopg2.Error as e:
            logger.error(f"[{window}] Transaction rolled back: {e}")
            raise PersistenceError(f"Failed to persist window {window}: {e}") from e

        logger.info(
            f"[{window}] ✅ Stored {len(trades)} trades, {len(fees)} fee distributions, "
            f"{len(registry_events)} registry events"
        )

    def close(self) -> None:
        if self.db_conn is not None and not self.db_conn.closed:
            self.db_conn.close()
