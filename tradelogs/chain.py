"""
Thin web3.py client for the three chain sources the crawler consumes: logs,
block metadata and transactions/receipts. Provider failures are classified
into the crawler's error taxonomy here so the fetchers only see
TransientError / RangeTooLargeError.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import requests
from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from .errors import ConsistencyError, RangeTooLargeError, TransientError
from .models import RawLogEntry
from .normalize import normalize_hex
from .retry import SPLIT_MARKERS

logger = logging.getLogger(__name__)


def classify_error(exc: BaseException, range_query: bool = False) -> Exception:
    """Map a provider exception to TransientError / RangeTooLargeError.

    Every web3 or HTTP failure is transient: the window is retried from the
    same checkpoint. Other exceptions are returned unchanged.
    """
    if isinstance(exc, (TransientError, ConsistencyError)):
        return exc
    msg = str(exc).lower()
    if range_query and any(marker in msg for marker in SPLIT_MARKERS):
        return RangeTooLargeError(str(exc))
    if isinstance(exc, (requests.exceptions.RequestException, Web3Exception, TimeoutError, ConnectionError)):
        return TransientError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, ValueError):
        # Older providers surface JSON-RPC errors as ValueError
        if any(x in msg for x in ('rate limit', '429', 'timeout', 'timed out', 'gateway',
                                  'internal error', 'server error', 'header not found',
                                  'connection')):
            return TransientError(f"{type(exc).__name__}: {exc}")
    return exc


def _raise_classified(exc: BaseException, range_query: bool = False) -> None:
    err = classify_error(exc, range_query=range_query)
    if err is exc:
        raise exc
    raise err from exc


class ChainClient:
    """Synchronous JSON-RPC access with a per-call deadline"""

    def __init__(self, rpc_url: str, request_timeout: float = 30.0, poa: bool = False, w3: Optional[Web3] = None):
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.poa = poa
        self._clients: Dict[float, Web3] = {}
        if w3 is not None:
            self._clients[request_timeout] = w3

    def _w3(self, timeout: Optional[float] = None) -> Web3:
        """Web3 instance whose HTTP provider enforces the given deadline"""
        timeout = self.request_timeout if timeout is None else timeout
        w3 = self._clients.get(timeout)
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={'timeout': timeout}))
            if self.poa:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._clients[timeout] = w3
        return w3

    def check_connection(self) -> int:
        """Verify the node answers; returns its chain id"""
        w3 = self._w3()
        if not w3.is_connected():
            raise TransientError(f"Failed to connect to {self.rpc_url}")
        chain_id = w3.eth.chain_id
        logger.info(f"[{w3.eth.block_number}] Connected to chain_id {chain_id}")
        return chain_id

    def block_number(self, timeout: Optional[float] = None) -> int:
        try:
            return int(self._w3(timeout).eth.block_number)
        except Exception as e:
            _raise_classified(e)

    def get_logs(self, from_block: int, to_block: int, addresses: Sequence[str],
                 topics: Optional[Sequence[str]] = None, timeout: Optional[float] = None) -> List[RawLogEntry]:
        """eth_getLogs for the address set, block range and first-topic alternatives"""
        params: Dict[str, Any] = {
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': list(addresses),
        }
        if topics:
            params['topics'] = [list(topics)]
        try:
            logs = self._w3(timeout).eth.get_logs(params)
        except Exception as e:
            _raise_classified(e, range_query=True)
        return [RawLogEntry.from_web3(log) for log in logs]

    def get_block_timestamp(self, block_number: int, timeout: Optional[float] = None) -> Optional[int]:
        try:
            block = self._w3(timeout).eth.get_block(block_number)
        except BlockNotFound:
            return None
        except Exception as e:
            _raise_classified(e)
        return int(block['timestamp'])

    def get_transaction(self, tx_hash: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            return dict(self._w3(timeout).eth.get_transaction(normalize_hex(tx_hash)))
        except TransactionNotFound:
            return None
        except Exception as e:
            _raise_classified(e)

    def get_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            return dict(self._w3(timeout).eth.get_transaction_receipt(normalize_hex(tx_hash)))
        except TransactionNotFound:
            return None
        except Exception as e:
            _raise_classified(e)
