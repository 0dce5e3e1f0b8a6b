"""
In-memory storage for dry runs and tests.
"""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

from ..models import OutputRecord, ReserveRegistryState
from .base import Storage

logger = logging.getLogger(__name__)


class InMemoryStorage(Storage):
    """Keeps records keyed by (record type, tx hash, log index)"""

    def __init__(self, checkpoint: Optional[int] = None, registry_state: Optional[ReserveRegistryState] = None):
        self._checkpoint = checkpoint
        self._registry = registry_state.copy() if registry_state else ReserveRegistryState()
        self._records: "OrderedDict[Tuple[str, str, int], OutputRecord]" = OrderedDict()
        self.persist_calls = 0

    def last_checkpoint(self) -> Optional[int]:
        return self._checkpoint

    def load_reserve_registry(self) -> ReserveRegistryState:
        return self._registry.copy()

    def persist_window(self, window, records: Sequence[OutputRecord],
                       registry_state: ReserveRegistryState) -> None:
        self.persist_calls += 1
        # Build the new state first so a bad record leaves everything untouched
        staged = OrderedDict(self._records)
        for record in records:
            staged[(record.record_type,) + record.natural_key] = record
        self._records = staged
        self._registry = registry_state.copy()
        self._checkpoint = window.to_block
        logger.info(f"[{window}] Stored {len(records)} records in memory")

    def records(self, record_type: Optional[str] = None) -> List[OutputRecord]:
        return [r for r in self._records.values() if record_type is None or r.record_type == record_type]

    def keys(self) -> Dict[Tuple[str, str, int], OutputRecord]:
        return dict(self._records)
