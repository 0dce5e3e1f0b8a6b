"""
Event schemas and the signature -> decoder registry.

Each schema lists its ABI inputs (name, type, indexed) and a builder that turns
the decoded values into a typed event variant. Supporting another protocol
version means registering more schemas, the assembler is untouched.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .errors import MalformedEventPayload, UnknownEventTopic
from .models import (
    EventVariant,
    FeeDistributed,
    RawLogEntry,
    RebateWalletUpdated,
    ReserveRegistered,
    TradeExecuted,
)
from .normalize import normalize_address, normalize_hex

logger = logging.getLogger(__name__)

Builder = Callable[[RawLogEntry, Dict[str, Any]], EventVariant]


@dataclass(frozen=True)
class EventSchema:
    name: str
    event_name: str
    inputs: Tuple[Tuple[str, str, bool], ...]
    build: Builder

    @property
    def signature(self) -> str:
        return f"{self.event_name}({','.join(t for _, t, _ in self.inputs)})"

    @property
    def topic(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))

    @property
    def indexed_inputs(self) -> List[Tuple[str, str]]:
        return [(n, t) for n, t, indexed in self.inputs if indexed]

    @property
    def data_inputs(self) -> List[Tuple[str, str]]:
        return [(n, t) for n, t, indexed in self.inputs if not indexed]

    def decode_values(self, entry: RawLogEntry) -> Dict[str, Any]:
        """ABI-decode indexed topics and the data payload into a name -> value dict"""
        indexed = self.indexed_inputs
        if len(entry.topics) - 1 != len(indexed):
            raise MalformedEventPayload(
                f"{self.event_name} expects {len(indexed)} indexed topics, "
                f"got {len(entry.topics) - 1} (tx {entry.transaction_hash}, log {entry.log_index})"
            )
        values: Dict[str, Any] = {}
        try:
            for (name, typ), topic in zip(indexed, entry.topics[1:]):
                values[name] = abi_decode([typ], bytes.fromhex(topic[2:]))[0]
            data_inputs = self.data_inputs
            decoded = abi_decode([t for _, t in data_inputs], entry.data)
        except (DecodingError, ValueError, TypeError) as e:
            raise MalformedEventPayload(
                f"failed to decode {self.event_name} (tx {entry.transaction_hash}, log {entry.log_index}): {e}"
            ) from e
        for (name, _), value in zip(data_inputs, decoded):
            values[name] = value
        return values

    def decode(self, entry: RawLogEntry) -> EventVariant:
        values = self.decode_values(entry)
        try:
            return self.build(entry, values)
        except (ValueError, TypeError) as e:
            raise MalformedEventPayload(
                f"invalid {self.event_name} values (tx {entry.transaction_hash}, log {entry.log_index}): {e}"
            ) from e


def _ids(values: Sequence[bytes]) -> Tuple[str, ...]:
    return tuple(normalize_hex(v) for v in values)


def _ints(values: Sequence[int]) -> Tuple[int, ...]:
    return tuple(int(v) for v in values)


def _build_trade(entry: RawLogEntry, v: Dict[str, Any]) -> TradeExecuted:
    return TradeExecuted(
        block_number=entry.block_number,
        transaction_hash=entry.transaction_hash,
        log_index=entry.log_index,
        contract_address=entry.contract_address,
        src_token=normalize_address(v['src']),
        dest_token=normalize_address(v['dest']),
        eth_wei_value=int(v['ethWeiValue']),
        network_fee_wei=int(v['networkFeeWei']),
        platform_fee_wei=int(v['customPlatformFeeWei']),
        t2e_reserve_ids=_ids(v['t2eIds']),
        e2t_reserve_ids=_ids(v['e2tIds']),
        t2e_src_amounts=_ints(v['t2eSrcAmts']),
        e2t_src_amounts=_ints(v['e2tSrcAmts']),
        t2e_rates=_ints(v['t2eRates']),
        e2t_rates=_ints(v['e2tRates']),
    )


def _build_fee_distributed(entry: RawLogEntry, v: Dict[str, Any]) -> FeeDistributed:
    wallets = tuple(normalize_address(w) for w in v['rebateWallets'])
    bps = _ints(v['rebatePercentBpsPerWallet'])
    if len(wallets) != len(bps):
        raise ValueError(f"{len(wallets)} rebate wallets but {len(bps)} rebate percentages")
    return FeeDistributed(
        block_number=entry.block_number,
        transaction_hash=entry.transaction_hash,
        log_index=entry.log_index,
        contract_address=entry.contract_address,
        token=normalize_address(v['token']),
        platform_wallet=normalize_address(v['platformWallet']),
        platform_fee_wei=int(v['platformFeeWei']),
        reward_wei=int(v['rewardWei']),
        rebate_wei=int(v['rebateWei']),
        rebate_wallets=wallets,
        rebate_percent_bps=bps,
        burn_amount_wei=int(v['burnAmtWei']),
    )


def _build_reserve_registered(entry: RawLogEntry, v: Dict[str, Any]) -> ReserveRegistered:
    return ReserveRegistered(
        block_number=entry.block_number,
        transaction_hash=entry.transaction_hash,
        log_index=entry.log_index,
        contract_address=entry.contract_address,
        reserve_address=normalize_address(v['reserve']),
        reserve_id=normalize_hex(v['reserveId']),
        reserve_type=int(v['reserveType']),
        rebate_wallet=normalize_address(v['rebateWallet']),
        add=bool(v['add']),
    )


def _build_rebate_wallet_updated(entry: RawLogEntry, v: Dict[str, Any]) -> RebateWalletUpdated:
    return RebateWalletUpdated(
        block_number=entry.block_number,
        transaction_hash=entry.transaction_hash,
        log_index=entry.log_index,
        contract_address=entry.contract_address,
        reserve_id=normalize_hex(v['reserveId']),
        rebate_wallet=normalize_address(v['rebateWallet']),
    )


KYBER_TRADE_V4 = EventSchema(
    name='kyber_trade_v4',
    event_name='KyberTrade',
    inputs=(
        ('src', 'address', True),
        ('dest', 'address', True),
        ('ethWeiValue', 'uint256', False),
        ('networkFeeWei', 'uint256', False),
        ('customPlatformFeeWei', 'uint256', False),
        ('t2eIds', 'bytes32[]', False),
        ('e2tIds', 'bytes32[]', False),
        ('t2eSrcAmts', 'uint256[]', False),
        ('e2tSrcAmts', 'uint256[]', False),
        ('t2eRates', 'uint256[]', False),
        ('e2tRates', 'uint256[]', False),
    ),
    build=_build_trade,
)

FEE_DISTRIBUTED_V4 = EventSchema(
    name='fee_distributed_v4',
    event_name='FeeDistributed',
    inputs=(
        ('token', 'address', True),
        ('platformWallet', 'address', True),
        ('platformFeeWei', 'uint256', False),
        ('rewardWei', 'uint256', False),
        ('rebateWei', 'uint256', False),
        ('rebateWallets', 'address[]', False),
        ('rebatePercentBpsPerWallet', 'uint256[]', False),
        ('burnAmtWei', 'uint256', False),
    ),
    build=_build_fee_distributed,
)

ADD_RESERVE_TO_STORAGE_V4 = EventSchema(
    name='add_reserve_to_storage_v4',
    event_name='AddReserveToStorage',
    inputs=(
        ('reserve', 'address', True),
        ('reserveId', 'bytes32', True),
        ('reserveType', 'uint8', False),
        ('rebateWallet', 'address', True),
        ('add', 'bool', False),
    ),
    build=_build_reserve_registered,
)

RESERVE_REBATE_WALLET_SET_V4 = EventSchema(
    name='reserve_rebate_wallet_set_v4',
    event_name='ReserveRebateWalletSet',
    inputs=(
        ('reserveId', 'bytes32', True),
        ('rebateWallet', 'address', True),
    ),
    build=_build_rebate_wallet_updated,
)

KNOWN_SCHEMAS: Dict[str, EventSchema] = {
    schema.name: schema
    for schema in (KYBER_TRADE_V4, FEE_DISTRIBUTED_V4, ADD_RESERVE_TO_STORAGE_V4, RESERVE_REBATE_WALLET_SET_V4)
}


class EventDecoderRegistry:
    """First-topic -> schema map used to decode raw logs"""

    def __init__(self, schemas: Iterable[EventSchema] = ()):
        self._by_topic: Dict[str, EventSchema] = {}
        for schema in schemas:
            self.register(schema)

    @classmethod
    def default(cls) -> "EventDecoderRegistry":
        return cls(KNOWN_SCHEMAS.values())

    @classmethod
    def from_bindings(cls, bindings: Iterable[Tuple[str, Optional[str]]]) -> "EventDecoderRegistry":
        """Build from (schema name, optional topic override) pairs"""
        registry = cls()
        for name, topic in bindings:
            schema = KNOWN_SCHEMAS.get(name)
            if schema is None:
                raise KeyError(f"Unknown event decoder: {name}")
            registry.register(schema, topic=topic)
        return registry

    def register(self, schema: EventSchema, topic: Optional[str] = None) -> None:
        key = normalize_hex(topic or schema.topic)
        existing = self._by_topic.get(key)
        if existing is not None and existing is not schema:
            raise ValueError(f"Topic {key} already bound to {existing.name}")
        self._by_topic[key] = schema
        logger.debug(f"Registered decoder {schema.name} for topic {key}")

    @property
    def topics(self) -> List[str]:
        return list(self._by_topic)

    def schema_for(self, topic: Optional[str]) -> Optional[EventSchema]:
        if topic is None:
            return None
        return self._by_topic.get(normalize_hex(topic))

    def __contains__(self, topic: str) -> bool:
        return self.schema_for(topic) is not None

    def decode(self, entry: RawLogEntry) -> EventVariant:
        schema = self.schema_for(entry.first_topic)
        if schema is None:
            raise UnknownEventTopic(entry.first_topic, entry.block_number, entry.transaction_hash, entry.log_index)
        return schema.decode(entry)
