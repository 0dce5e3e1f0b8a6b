"""
Transaction hash -> gas used, gas price, status and sender, memoized per
transaction. Several trade events of one transaction share a single lookup.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import MissingReceiptError
from .normalize import normalize_address, normalize_hex
from .retry import RetryPolicy
from .single_flight import SingleFlightCache

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 1


@dataclass(frozen=True)
class TxReceipt:
    transaction_hash: str
    block_number: int
    gas_used: int
    gas_price: int
    status: int
    sender: str

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def transaction_fee(self) -> int:
        """gasUsed * gasPrice in wei, exact integer arithmetic"""
        return self.gas_used * self.gas_price


class ReceiptFetcher:
    """Fetches transaction + receipt pairs through a single-flight cache"""

    def __init__(self, chain, retry_policy: Optional[RetryPolicy] = None,
                 timeout: Optional[float] = None, max_entries: Optional[int] = 10_000):
        self.chain = chain
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._cache = SingleFlightCache(self._load, name="receipts", max_entries=max_entries)

    def _load(self, tx_hash: str) -> TxReceipt:
        receipt = self.retry_policy.run(
            lambda: self.chain.get_receipt(tx_hash, timeout=self.timeout),
            description=f"get_transaction_receipt({tx_hash})",
        )
        if receipt is None:
            raise MissingReceiptError(f"Receipt not found for tx {tx_hash}")

        # effectiveGasPrice is authoritative for EIP-1559 transactions; older
        # nodes only report gasPrice on the transaction itself
        gas_price = receipt.get('effectiveGasPrice')
        sender = receipt.get('from')
        if gas_price is None or sender is None:
            tx = self.retry_policy.run(
                lambda: self.chain.get_transaction(tx_hash, timeout=self.timeout),
                description=f"get_transaction({tx_hash})",
            )
            if tx is None:
                raise MissingReceiptError(f"Transaction not found for tx {tx_hash}")
            if gas_price is None:
                gas_price = tx.get('gasPrice')
            sender = sender or tx.get('from')
        if gas_price is None:
            raise MissingReceiptError(f"No gas price reported for tx {tx_hash}")

        result = TxReceipt(
            transaction_hash=tx_hash,
            block_number=int(receipt['blockNumber']),
            gas_used=int(receipt['gasUsed']),
            gas_price=int(gas_price),
            status=int(receipt.get('status', STATUS_SUCCESS)),
            sender=normalize_address(sender),
        )
        logger.debug(f"[{result.block_number}] Receipt {tx_hash}: gas_used={result.gas_used} gas_price={result.gas_price} status={result.status}")
        return result

    def fetch(self, tx_hash: str) -> TxReceipt:
        return self._cache.get(normalize_hex(tx_hash))

    @property
    def cache(self) -> SingleFlightCache:
        return self._cache
