"""
Block window scheduling and the durable checkpoint.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import CrawlerError, PersistenceError
from .models import OutputRecord, ReserveRegistryState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockWindow:
    from_block: int
    to_block: int

    def __len__(self) -> int:
        return self.to_block - self.from_block + 1

    def __str__(self) -> str:
        return f"{self.from_block}-{self.to_block}"


def next_window(checkpoint: int, chain_head: int, confirmation_lag: int, max_window_size: int) -> Optional[BlockWindow]:
    """Next window after checkpoint, or None while nothing is past the confirmation lag"""
    from_block = checkpoint + 1
    to_block = min(checkpoint + max_window_size, chain_head - confirmation_lag)
    if to_block < from_block:
        return None
    return BlockWindow(from_block, to_block)


class BlockRangeScheduler:
    """Picks windows and advances the checkpoint only after storage confirms a window.

    The checkpoint is written by storage in the same transaction as the
    window's records, so a failed or interrupted persist leaves it untouched
    and the same window is processed again on the next poll.
    """

    def __init__(self, storage, confirmation_lag: int, max_window_size: int, start_block: int = 0):
        if max_window_size < 1:
            raise ValueError("max_window_size must be at least 1")
        if confirmation_lag < 0:
            raise ValueError("confirmation_lag cannot be negative")
        self.storage = storage
        self.confirmation_lag = confirmation_lag
        self.max_window_size = max_window_size
        self.start_block = start_block
        self._checkpoint: Optional[int] = None

    @property
    def checkpoint(self) -> int:
        if self._checkpoint is None:
            return self.load()
        return self._checkpoint

    def load(self) -> int:
        """Read the durable checkpoint; a fresh deployment starts just before start_block"""
        stored = self.storage.last_checkpoint()
        if stored is None:
            self._checkpoint = self.start_block - 1
            logger.info(f"No checkpoint stored, starting from block {self.start_block}")
        else:
            self._checkpoint = stored
            logger.info(f"Resuming after checkpoint {stored}")
        return self._checkpoint

    def reset(self, checkpoint: int) -> None:
        """Override the in-memory checkpoint (backfills); persisted with the next window"""
        logger.warning(f"Checkpoint overridden: {self._checkpoint} -> {checkpoint}")
        self._checkpoint = checkpoint

    def next_window(self, chain_head: int) -> Optional[BlockWindow]:
        return next_window(self.checkpoint, chain_head, self.confirmation_lag, self.max_window_size)

    def commit(self, window: BlockWindow, records: Sequence[OutputRecord],
               registry_state: ReserveRegistryState) -> None:
        """Persist the window's records and checkpoint as one unit, then advance"""
        if window.from_block != self.checkpoint + 1:
            raise CrawlerError(f"window {window} does not follow checkpoint {self.checkpoint}")
        try:
            self.storage.persist_window(window, records, registry_state)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"failed to persist window {window}: {type(e).__name__}: {e}") from e
        self._checkpoint = window.to_block
        logger.debug(f"[{window.to_block}] Checkpoint advanced")
