"""
Exception taxonomy for the crawler.

Transient errors are retried inside the fetchers. Everything else aborts the
current block window; the crawl loop decides whether the window is retried on
the next poll or the crawler stops for an operator.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for every error raised by the crawler"""


class ConfigError(CrawlerError):
    """Configuration file missing or invalid"""


class TransientError(CrawlerError):
    """Network timeout, rate limit or provider hiccup; safe to retry"""


class RangeTooLargeError(TransientError):
    """Provider refused a log query because the block range returns too much"""


class SchemaError(CrawlerError):
    """A log could not be decoded with the registered event schemas"""


class UnknownEventTopic(SchemaError):
    """First topic of a log does not match any registered decoder"""

    def __init__(self, topic: Optional[str], block_number: int, transaction_hash: str, log_index: int):
        self.topic = topic
        self.block_number = block_number
        self.transaction_hash = transaction_hash
        self.log_index = log_index
        super().__init__(
            f"unknown event topic {topic} at block {block_number} "
            f"(tx {transaction_hash}, log {log_index})"
        )


class MalformedEventPayload(SchemaError):
    """Topics or data of a known event could not be ABI-decoded"""


class ConsistencyError(CrawlerError):
    """Chain data contradicts itself (missing receipt, reverted trade, missing block)"""


class MissingReceiptError(ConsistencyError):
    """Transaction or receipt lookup returned nothing"""


class FailedTransactionError(ConsistencyError):
    """A trade event was emitted by a transaction whose receipt reports failure"""


class PersistenceError(CrawlerError):
    """Storage rejected or failed to durably write a window batch"""


class WindowCancelled(CrawlerError):
    """Processing of the current window was cancelled by the process"""


class WindowFailed(CrawlerError):
    """Wraps the cause of a failed window together with its block bounds"""

    def __init__(self, from_block: int, to_block: int, cause: BaseException):
        self.from_block = from_block
        self.to_block = to_block
        self.cause = cause
        super().__init__(f"window {from_block}-{to_block} failed: {type(cause).__name__}: {cause}")

    @property
    def is_schema_error(self) -> bool:
        return isinstance(self.cause, SchemaError)
