"""
Storage interface the crawler commits windows through.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from ..models import OutputRecord, ReserveRegistryState


class Storage(ABC):
    """Durable sink for assembled windows"""

    @abstractmethod
    def last_checkpoint(self) -> Optional[int]:
        """Last fully persisted block, None before the first window"""
        pass

    @abstractmethod
    def load_reserve_registry(self) -> ReserveRegistryState:
        """Reserve registry snapshot as of the checkpoint"""
        pass

    @abstractmethod
    def persist_window(self, window, records: Sequence[OutputRecord],
                       registry_state: ReserveRegistryState) -> None:
        """Upsert records by natural key, store the registry and set checkpoint = window.to_block.

        All of it succeeds or none of it does.
        """
        pass

    def close(self) -> None:
        pass
