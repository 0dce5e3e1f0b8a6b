"""
Event publishing helper for the crawler.
Inserts one outbox row per record within the window's storage transaction.
"""
import json
from typing import Any, Dict, Optional

from .models import OutputRecord, RegistryUpdateRecord, TradeRecord
from .normalize import normalize_hex


class EventPublisher:
    """Helper class to publish records to the outbox table"""

    EVENT_TYPES = {
        'trade': 'trade',
        'fee_distributed': 'fee',
        'reserve_registered': 'reserve',
        'rebate_wallet_updated': 'rebate_wallet',
    }

    def __init__(self, chain_id: int):
        self.chain_id = chain_id

    @staticmethod
    def create_uniq_key(chain_id: int, tx_hash: Any, log_index: int) -> str:
        """Create unique idempotency key for an event"""
        # Lower-case without 0x so the key is stable however the hash was formatted
        return f"{chain_id}:{normalize_hex(tx_hash)[2:]}:{log_index}"

    def event_type(self, record: OutputRecord) -> str:
        if isinstance(record, RegistryUpdateRecord):
            return self.EVENT_TYPES[record.action]
        return self.EVENT_TYPES[record.record_type]

    def outbox_row(self, record: OutputRecord) -> tuple:
        """Row values for insert_outbox_rows, in column order"""
        timestamp: Optional[int] = record.timestamp if isinstance(record, TradeRecord) else None
        payload: Dict[str, Any] = record.to_dict()
        tx_hash = normalize_hex(record.transaction_hash)
        return (
            self.event_type(record), self.chain_id, record.block_number, tx_hash,
            record.log_index, record.contract_address, timestamp,
            json.dumps(payload),
            self.create_uniq_key(self.chain_id, tx_hash, record.log_index),
        )

    def insert_outbox_rows(self, cursor, records) -> None:
        """
        Insert outbox rows for records.
        Should be called within the same transaction as domain inserts.
        """
        rows = [self.outbox_row(record) for record in records]
        if not rows:
            return
        cursor.executemany("""
            INSERT INTO outbox_events (
                type, chain_id, block_number, tx_hash, log_index,
                contract_address, timestamp, payload_json, uniq, ver
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
            ON CONFLICT (uniq) DO NOTHING
        """, rows)
