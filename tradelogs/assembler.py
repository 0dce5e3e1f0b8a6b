"""
Event assembly: turns one window of raw logs into finished records.

The walk over the logs is sequential and strictly in (block, log index)
order; it decodes every entry, applies registry events to the window's copy of
the reserve registry and reserves an output slot per entry. Trade enrichment
(receipt + block timestamp) then runs on a bounded thread pool and writes into
those slots, so output order never depends on completion order. Any failure
discards the whole window.
"""

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import FailedTransactionError, WindowCancelled
from .events import EventDecoderRegistry
from .models import (
    FeeDistributed,
    FeeDistributionRecord,
    OutputRecord,
    RawLogEntry,
    RebateWalletUpdated,
    RegistryUpdateRecord,
    ReserveRegistered,
    ReserveRegistryState,
    TradeExecuted,
    TradeRecord,
)
from .normalize import normalize_address, normalize_hex
from .receipt_fetcher import ReceiptFetcher
from .timestamp_resolver import TimestampResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingTrade:
    """A decoded trade waiting for enrichment, with its output slot"""
    slot: int
    event: TradeExecuted
    src_reserves: Tuple[str, ...]
    dst_reserves: Tuple[str, ...]
    is_volume_excluded: bool


@dataclass
class AssembledWindow:
    records: List[OutputRecord]
    registry_state: ReserveRegistryState
    skipped_removed: int = 0

    @property
    def trades(self) -> List[TradeRecord]:
        return [r for r in self.records if isinstance(r, TradeRecord)]


class EventAssembler:
    """Decodes, enriches and orders the records of one block window"""

    def __init__(self, registry: EventDecoderRegistry, timestamps: TimestampResolver,
                 receipts: ReceiptFetcher, volume_excluded: Iterable[str] = (), workers: int = 4):
        self.registry = registry
        self.timestamps = timestamps
        self.receipts = receipts
        self.volume_excluded = self._normalize_exclusions(volume_excluded)
        self.workers = max(1, workers)

    @staticmethod
    def _normalize_exclusions(values: Iterable[str]) -> frozenset:
        """Exclusions may be reserve addresses or bytes32 reserve ids"""
        normalized = set()
        for value in values:
            s = str(value)
            if len(s) == 42:
                normalized.add(normalize_address(s))
            else:
                normalized.add(normalize_hex(s))
        return frozenset(normalized)

    def _resolve_reserves(self, reserve_ids: Sequence[str], state: ReserveRegistryState) -> Tuple[str, ...]:
        """Reserve ids -> addresses where the registry knows them, the raw id otherwise"""
        return tuple(state.address_of(rid) or rid for rid in reserve_ids)

    def _is_excluded(self, reserve_ids: Sequence[str], reserves: Sequence[str]) -> bool:
        return any(r in self.volume_excluded for r in reserves) or \
            any(rid in self.volume_excluded for rid in reserve_ids)

    def assemble(self, entries: Sequence[RawLogEntry], registry_state: ReserveRegistryState,
                 cancel_event: Optional[threading.Event] = None) -> AssembledWindow:
        """Build the window's records; the passed registry state is never mutated"""
        state = registry_state.copy()
        ordered = sorted(entries, key=lambda entry: entry.position)
        slots: List[Optional[OutputRecord]] = []
        pending: List[PendingTrade] = []
        skipped = 0

        for entry in ordered:
            if entry.removed:
                skipped += 1
                logger.debug(f"[{entry.block_number}] Skipping removed log {entry.transaction_hash}:{entry.log_index}")
                continue

            event = self.registry.decode(entry)

            if isinstance(event, FeeDistributed):
                slots.append(FeeDistributionRecord.from_event(event))
            elif isinstance(event, (ReserveRegistered, RebateWalletUpdated)):
                state.apply(event)
                slots.append(RegistryUpdateRecord.from_event(event))
            elif isinstance(event, TradeExecuted):
                src_reserves = self._resolve_reserves(event.t2e_reserve_ids, state)
                dst_reserves = self._resolve_reserves(event.e2t_reserve_ids, state)
                excluded = self._is_excluded(
                    event.t2e_reserve_ids + event.e2t_reserve_ids, src_reserves + dst_reserves
                )
                pending.append(PendingTrade(len(slots), event, src_reserves, dst_reserves, excluded))
                slots.append(None)

        if pending:
            self._enrich_all(pending, slots, cancel_event)

        records = [record for record in slots if record is not None]
        if len(records) != len(slots):
            raise RuntimeError("assembled window has unfilled trade slots")
        return AssembledWindow(records=records, registry_state=state, skipped_removed=skipped)

    def _enrich_all(self, pending: List[PendingTrade], slots: List[Optional[OutputRecord]],
                    cancel_event: Optional[threading.Event]) -> None:
        if self.workers == 1 or len(pending) == 1:
            for trade in pending:
                slots[trade.slot] = self._enrich(trade, cancel_event)
            return

        abort = threading.Event()
        executor = ThreadPoolExecutor(max_workers=min(self.workers, len(pending)),
                                      thread_name_prefix="enrich")
        try:
            futures = {executor.submit(self._enrich, trade, cancel_event, abort): trade for trade in pending}
            done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in done if f.exception() is not None]
            if failed:
                abort.set()
                for future in not_done:
                    future.cancel()
                # Report the failure of the earliest trade so errors are deterministic
                first = min(failed, key=lambda f: futures[f].slot)
                raise first.exception()
            for future, trade in futures.items():
                slots[trade.slot] = future.result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    @staticmethod
    def _stopped(*events: Optional[threading.Event]) -> bool:
        return any(e is not None and e.is_set() for e in events)

    def _enrich(self, trade: PendingTrade, cancel_event: Optional[threading.Event],
                abort: Optional[threading.Event] = None) -> TradeRecord:
        event = trade.event
        if self._stopped(cancel_event, abort):
            raise WindowCancelled(f"cancelled before enriching tx {event.transaction_hash}")

        receipt = self.receipts.fetch(event.transaction_hash)
        if not receipt.succeeded:
            raise FailedTransactionError(
                f"Trade event in failed tx {event.transaction_hash} (status {receipt.status}) "
                f"at block {event.block_number}"
            )
        if self._stopped(cancel_event, abort):
            raise WindowCancelled(f"cancelled while enriching tx {event.transaction_hash}")
        timestamp = self.timestamps.resolve(event.block_number)

        record = TradeRecord(
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            log_index=event.log_index,
            contract_address=event.contract_address,
            timestamp=timestamp,
            user_address=receipt.sender,
            src_token=event.src_token,
            dest_token=event.dest_token,
            src_amount=event.src_amount,
            eth_amount=event.eth_wei_value,
            network_fee=event.network_fee_wei,
            platform_fee=event.platform_fee_wei,
            src_reserves=trade.src_reserves,
            dst_reserves=trade.dst_reserves,
            t2e_rates=event.t2e_rates,
            e2t_rates=event.e2t_rates,
            gas_used=receipt.gas_used,
            gas_price=receipt.gas_price,
            transaction_fee=receipt.transaction_fee,
            is_volume_excluded=trade.is_volume_excluded,
        )
        logger.debug(f"[{event.block_number}] Gathered trade {event.transaction_hash}:{event.log_index} fee={record.transaction_fee}")
        return record
