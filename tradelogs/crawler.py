#!/usr/bin/env python3
"""
Trade-log crawler for the Kyber v4 contracts.

One window at a time: schedule -> fetch logs -> assemble -> persist -> advance
checkpoint. A failed window leaves the checkpoint where it was and is retried
on the next poll; schema errors stop the crawler until the decoders are fixed.
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Optional

from .assembler import AssembledWindow, EventAssembler
from .chain import ChainClient
from .config import CrawlerConfig, configure_logging, load_config
from .errors import ConfigError, CrawlerError, SchemaError, WindowCancelled, WindowFailed
from .events import EventDecoderRegistry
from .log_fetcher import LogFetcher
from .models import ReserveRegistryState
from .receipt_fetcher import ReceiptFetcher
from .scheduler import BlockRangeScheduler, BlockWindow
from .storage import InMemoryStorage, Storage
from .timestamp_resolver import TimestampResolver

logger = logging.getLogger(__name__)


@dataclass
class WindowResult:
    window: BlockWindow
    assembled: AssembledWindow
    log_count: int


class TradeLogCrawler:
    """Wires the fetchers, assembler and scheduler around one storage backend"""

    def __init__(self, config: CrawlerConfig, chain, storage: Storage,
                 registry: Optional[EventDecoderRegistry] = None):
        self.config = config
        self.chain = chain
        self.storage = storage
        self.registry = registry or EventDecoderRegistry.from_bindings(config.event_bindings())

        retry_policy = config.retry.policy()
        timeout = config.chain.request_timeout
        self.log_fetcher = LogFetcher(chain, config.contracts.addresses, retry_policy, timeout=timeout)
        self.timestamps = TimestampResolver(chain, retry_policy, timeout=timeout)
        self.receipts = ReceiptFetcher(chain, retry_policy, timeout=timeout)
        self.assembler = EventAssembler(
            self.registry,
            self.timestamps,
            self.receipts,
            volume_excluded=config.crawler.volume_excluded_reserves,
            workers=config.crawler.enrichment_workers,
        )
        self.scheduler = BlockRangeScheduler(
            storage,
            confirmation_lag=config.crawler.confirmation_lag,
            max_window_size=config.crawler.max_window_size,
            start_block=config.crawler.start_block,
        )
        self.registry_state: Optional[ReserveRegistryState] = None
        self._stop = threading.Event()

    def start(self, from_block: Optional[int] = None) -> None:
        """Load checkpoint and reserve registry from storage"""
        self.scheduler.load()
        if from_block is not None:
            self.scheduler.reset(from_block - 1)
        self.registry_state = self.storage.load_reserve_registry()

    def stop(self) -> None:
        logger.info("Stop requested, cancelling in-flight window")
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def process_window(self, window: BlockWindow) -> WindowResult:
        """Fetch and assemble one window; nothing is persisted here"""
        if self.registry_state is None:
            self.start()
        try:
            logs = self.log_fetcher.fetch(window.from_block, window.to_block, self.registry.topics)
            if self.stopped:
                raise WindowCancelled(f"window {window} cancelled after log fetch")
            assembled = self.assembler.assemble(logs, self.registry_state, cancel_event=self._stop)
        except Exception as e:
            raise WindowFailed(window.from_block, window.to_block, e) from e
        return WindowResult(window=window, assembled=assembled, log_count=len(logs))

    def commit_window(self, result: WindowResult) -> None:
        """Persist a window; the in-memory registry only moves once storage has it"""
        try:
            self.scheduler.commit(result.window, result.assembled.records, result.assembled.registry_state)
        except CrawlerError as e:
            raise WindowFailed(result.window.from_block, result.window.to_block, e) from e
        self.registry_state = result.assembled.registry_state

    def run_once(self) -> int:
        """Process every window that is ready; returns how many were committed"""
        if self.registry_state is None:
            self.start()
        chain_head = self.chain.block_number()
        processed = 0
        while not self.stopped:
            window = self.scheduler.next_window(chain_head)
            if window is None:
                logger.debug(f"[{chain_head}] No window ready (checkpoint {self.scheduler.checkpoint}, lag {self.scheduler.confirmation_lag})")
                break
            result = self.process_window(window)
            self.commit_window(result)
            processed += 1
            trades = len(result.assembled.trades)
            remaining = chain_head - self.scheduler.confirmation_lag - window.to_block
            logger.info(
                f"[{window}, -{remaining}] Processed {result.log_count} logs -> "
                f"{len(result.assembled.records)} records ({trades} trades, "
                f"{result.assembled.skipped_removed} removed)"
            )
        return processed

    def run(self) -> None:
        """Main crawl loop"""
        poll_interval = self.config.crawler.poll_interval
        logger.info(f"🚀 Starting trade-log crawler for {len(self.config.contracts.addresses)} contracts")

        while not self.stopped:
            try:
                self.run_once()
            except WindowFailed as e:
                if isinstance(e.cause, SchemaError):
                    logger.critical(f"❌ {e}; decoder registry needs an update, stopping at checkpoint {self.scheduler.checkpoint}")
                    raise
                if isinstance(e.cause, WindowCancelled):
                    break
                logger.error(f"❌ {e}; retrying after {poll_interval}s from checkpoint {self.scheduler.checkpoint}")
            except CrawlerError as e:
                logger.error(f"Crawler error: {e}; retrying after {poll_interval}s")

            logger.debug(f"⏸️  Sleeping for {poll_interval} seconds...")
            self._stop.wait(poll_interval)

        logger.info(f"Crawler stopped at checkpoint {self.scheduler.checkpoint}")


def build_storage(config: CrawlerConfig, dry_run: bool = False) -> Storage:
    if dry_run or not config.database.url:
        if not dry_run:
            logger.warning("No database.url configured, records are kept in memory only")
        return InMemoryStorage()
    from .storage.postgres import PostgresStorage
    return PostgresStorage(
        config.database.url,
        crawler_name=config.database.crawler_name,
        chain_id=config.chain.chain_id,
        publish_outbox=config.database.publish_outbox,
    )


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Kyber trade-log crawler')
    parser.add_argument('--config', '-c', help='Path to config file', default='config.yaml')
    parser.add_argument('--once', action='store_true', help='Process the ready windows and exit')
    parser.add_argument('--from-block', type=int, dest='from_block', default=None,
                        help='Ignore the stored checkpoint and start at this block')
    parser.add_argument('--dry-run', action='store_true', dest='dry_run',
                        help='Keep records in memory, write nothing')
    parser.add_argument('--init-schema', action='store_true', dest='init_schema',
                        help='Create the database tables and exit')
    parser.add_argument('--log-level', dest='log_level', default=None, help='Override config log level')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        configure_logging("INFO")
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)
    configure_logging(args.log_level or config.log_level)

    storage = None
    try:
        storage = build_storage(config, dry_run=args.dry_run)
        if args.init_schema:
            if not hasattr(storage, 'init_schema'):
                logger.error("--init-schema needs database.url")
                sys.exit(1)
            storage.init_schema()
            return

        chain = ChainClient(config.chain.rpc_url, config.chain.request_timeout, poa=config.chain.poa)
        chain.check_connection()
        crawler = TradeLogCrawler(config, chain, storage)
        crawler.start(from_block=args.from_block)

        def _handle_signal(signum, frame):
            crawler.stop()
        signal.signal(signal.SIGTERM, _handle_signal)

        if args.once:
            crawler.run_once()
        else:
            crawler.run()
    except KeyboardInterrupt:
        logger.info("Crawler stopped by user")
    except WindowFailed as e:
        logger.error(f"Crawler halted: {e}")
        sys.exit(2)
    except CrawlerError as e:
        logger.error(f"Failed to start crawler: {e}")
        sys.exit(1)
    finally:
        if storage is not None:
            storage.close()


if __name__ == "__main__":
    main()
