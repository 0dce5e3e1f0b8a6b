"""
Test doubles: an in-process chain and builders for ABI-encoded Kyber logs
"""

import threading
import time
from collections import Counter, defaultdict

from eth_abi import encode as abi_encode

from tradelogs.errors import RangeTooLargeError, TransientError
from tradelogs.events import (
    ADD_RESERVE_TO_STORAGE_V4,
    FEE_DISTRIBUTED_V4,
    KYBER_TRADE_V4,
    RESERVE_REBATE_WALLET_SET_V4,
)
from tradelogs.models import ETH_ADDRESS, RawLogEntry
from tradelogs.normalize import normalize_address, normalize_hex

CONTRACT = normalize_address("0x" + "11" * 20)
KNC = normalize_address("0x" + "22" * 20)
USER = normalize_address("0x" + "33" * 20)
PLATFORM_WALLET = normalize_address("0x" + "44" * 20)
REBATE_WALLET = normalize_address("0x" + "55" * 20)
RESERVE_A = normalize_address("0x" + "66" * 20)
RESERVE_B = normalize_address("0x" + "77" * 20)
NEW_REBATE_WALLET = normalize_address("0x" + "88" * 20)

UNKNOWN_TOPIC = "0x" + "ab" * 32


def tx_hash(n):
    return "0x%064x" % n


def reserve_id(n):
    return "0xaa" + "%062x" % n


def _bytes32(value):
    return bytes.fromhex(normalize_hex(value)[2:])


def make_log(schema, values, block, log_index, tx, contract=CONTRACT, removed=False):
    """Encode values the way the contract would emit them"""
    topics = [schema.topic]
    for name, typ in schema.indexed_inputs:
        topics.append(normalize_hex(abi_encode([typ], [values[name]])))
    data_inputs = schema.data_inputs
    data = abi_encode([t for _, t in data_inputs], [values[n] for n, _ in data_inputs])
    return RawLogEntry(
        contract_address=contract,
        topics=tuple(topics),
        data=data,
        block_number=block,
        transaction_hash=normalize_hex(tx),
        log_index=log_index,
        removed=removed,
    )


def trade_log(block, log_index, tx, src=KNC, dest=ETH_ADDRESS, eth_wei=10**18,
              network_fee=3 * 10**15, platform_fee=0, t2e_ids=(), e2t_ids=(),
              t2e_src_amts=(), e2t_src_amts=(), t2e_rates=(), e2t_rates=(), **kwargs):
    values = {
        'src': src,
        'dest': dest,
        'ethWeiValue': eth_wei,
        'networkFeeWei': network_fee,
        'customPlatformFeeWei': platform_fee,
        't2eIds': [_bytes32(i) for i in t2e_ids],
        'e2tIds': [_bytes32(i) for i in e2t_ids],
        't2eSrcAmts': list(t2e_src_amts),
        'e2tSrcAmts': list(e2t_src_amts),
        't2eRates': list(t2e_rates),
        'e2tRates': list(e2t_rates),
    }
    return make_log(KYBER_TRADE_V4, values, block, log_index, tx, **kwargs)


def fee_log(block, log_index, tx, token=ETH_ADDRESS, platform_wallet=PLATFORM_WALLET,
            platform_fee=0, reward=10**15, rebate=10**15, rebate_wallets=(REBATE_WALLET,),
            rebate_bps=(10000,), burn=10**15, **kwargs):
    values = {
        'token': token,
        'platformWallet': platform_wallet,
        'platformFeeWei': platform_fee,
        'rewardWei': reward,
        'rebateWei': rebate,
        'rebateWallets': list(rebate_wallets),
        'rebatePercentBpsPerWallet': list(rebate_bps),
        'burnAmtWei': burn,
    }
    return make_log(FEE_DISTRIBUTED_V4, values, block, log_index, tx, **kwargs)


def reserve_log(block, log_index, tx, reserve=RESERVE_A, rid=None, reserve_type=1,
                rebate_wallet=REBATE_WALLET, add=True, **kwargs):
    values = {
        'reserve': reserve,
        'reserveId': _bytes32(rid or reserve_id(1)),
        'reserveType': reserve_type,
        'rebateWallet': rebate_wallet,
        'add': add,
    }
    return make_log(ADD_RESERVE_TO_STORAGE_V4, values, block, log_index, tx, **kwargs)


def rebate_log(block, log_index, tx, rid=None, rebate_wallet=NEW_REBATE_WALLET, **kwargs):
    values = {
        'reserveId': _bytes32(rid or reserve_id(1)),
        'rebateWallet': rebate_wallet,
    }
    return make_log(RESERVE_REBATE_WALLET_SET_V4, values, block, log_index, tx, **kwargs)


def unknown_log(block, log_index, tx):
    return RawLogEntry(CONTRACT, (UNKNOWN_TOPIC,), b"", block, normalize_hex(tx), log_index)


class FakeChain:
    """Chain stand-in with call counters and injectable provider failures"""

    def __init__(self, head=1000):
        self.head = head
        self.blocks = {}
        self.logs = []
        self.receipts = {}
        self.transactions = {}
        self.calls = Counter()
        self.failures = defaultdict(int)
        # method -> exception raised on its next call
        self.errors = {}
        self.max_span = None
        self.filter_topics = True
        self.delay = 0.0
        self.log_queries = []
        self._lock = threading.Lock()

    def _record(self, method):
        with self._lock:
            self.calls[method] += 1
            if self.failures[method] > 0:
                self.failures[method] -= 1
                raise TransientError(f"{method}: 429 rate limit")
            error = self.errors.pop(method, None)
        if error is not None:
            raise error
        if self.delay:
            time.sleep(self.delay)

    def add_block(self, number, timestamp=None):
        self.blocks[number] = 1_600_000_000 + number * 13 if timestamp is None else timestamp

    def add_tx(self, tx, block, gas_used=21000, gas_price=50 * 10**9, status=1, sender=USER,
               effective_gas_price=True):
        tx = normalize_hex(tx)
        receipt = {
            'transactionHash': tx,
            'blockNumber': block,
            'gasUsed': gas_used,
            'status': status,
            'from': sender,
        }
        if effective_gas_price:
            receipt['effectiveGasPrice'] = gas_price
        self.receipts[tx] = receipt
        self.transactions[tx] = {'hash': tx, 'blockNumber': block, 'gasPrice': gas_price, 'from': sender}
        if block not in self.blocks:
            self.add_block(block)

    def add_logs(self, *entries):
        for entry in entries:
            self.logs.append(entry)
            if entry.block_number not in self.blocks:
                self.add_block(entry.block_number)

    def check_connection(self):
        return 1

    def block_number(self, timeout=None):
        self._record('block_number')
        return self.head

    def get_logs(self, from_block, to_block, addresses, topics=None, timeout=None):
        self._record('get_logs')
        self.log_queries.append((from_block, to_block))
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            raise RangeTooLargeError("query returned more than 10000 results")
        return [
            entry for entry in self.logs
            if from_block <= entry.block_number <= to_block
            and entry.contract_address in addresses
            and (not self.filter_topics or not topics or entry.first_topic in topics)
        ]

    def get_block_timestamp(self, block_number, timeout=None):
        self._record('get_block')
        return self.blocks.get(block_number)

    def get_receipt(self, tx, timeout=None):
        self._record('get_receipt')
        receipt = self.receipts.get(normalize_hex(tx))
        return dict(receipt) if receipt is not None else None

    def get_transaction(self, tx, timeout=None):
        self._record('get_transaction')
        found = self.transactions.get(normalize_hex(tx))
        return dict(found) if found is not None else None
