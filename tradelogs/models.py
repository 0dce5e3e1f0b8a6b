"""
Domain types: raw log entries, decoded event variants, assembled records and
the reserve registry state owned by a crawl run.

Token amounts and fees are plain Python ints (wei); they are serialized as
decimal strings so JSON consumers never round them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from .normalize import normalize_address, normalize_hex

ETH_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


@dataclass(frozen=True)
class RawLogEntry:
    """A contract log as returned by eth_getLogs"""
    contract_address: str
    topics: Tuple[str, ...]
    data: bytes
    block_number: int
    transaction_hash: str
    log_index: int
    removed: bool = False

    @property
    def first_topic(self) -> Optional[str]:
        return self.topics[0] if self.topics else None

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    @classmethod
    def from_web3(cls, log: Any) -> "RawLogEntry":
        """Build an entry from a web3.py log (AttributeDict with HexBytes values)"""
        data = log['data']
        if isinstance(data, str):
            data = bytes.fromhex(data[2:] if data.startswith('0x') else data)
        return cls(
            contract_address=normalize_address(log['address']),
            topics=tuple(normalize_hex(t) for t in log['topics']),
            data=bytes(data),
            block_number=int(log['blockNumber']),
            transaction_hash=normalize_hex(log['transactionHash']),
            log_index=int(log['logIndex']),
            removed=bool(log.get('removed', False)),
        )


# Event variants. Every variant starts with the position of its originating log.

@dataclass(frozen=True)
class TradeExecuted:
    block_number: int
    transaction_hash: str
    log_index: int
    contract_address: str
    src_token: str
    dest_token: str
    eth_wei_value: int
    network_fee_wei: int
    platform_fee_wei: int
    t2e_reserve_ids: Tuple[str, ...]
    e2t_reserve_ids: Tuple[str, ...]
    t2e_src_amounts: Tuple[int, ...]
    e2t_src_amounts: Tuple[int, ...]
    t2e_rates: Tuple[int, ...]
    e2t_rates: Tuple[int, ...]

    kind = 'trade'

    @property
    def src_amount(self) -> int:
        """Amount of source token sold; ETH-sourced trades only carry the ETH value"""
        if self.src_token == ETH_ADDRESS or not self.t2e_src_amounts:
            return self.eth_wei_value
        return sum(self.t2e_src_amounts)


@dataclass(frozen=True)
class FeeDistributed:
    block_number: int
    transaction_hash: str
    log_index: int
    contract_address: str
    token: str
    platform_wallet: str
    platform_fee_wei: int
    reward_wei: int
    rebate_wei: int
    rebate_wallets: Tuple[str, ...]
    rebate_percent_bps: Tuple[int, ...]
    burn_amount_wei: int

    kind = 'fee_distributed'


@dataclass(frozen=True)
class ReserveRegistered:
    block_number: int
    transaction_hash: str
    log_index: int
    contract_address: str
    reserve_address: str
    reserve_id: str
    reserve_type: int
    rebate_wallet: str
    # False when the reserve is removed from storage
    add: bool = True

    kind = 'reserve_registered'


@dataclass(frozen=True)
class RebateWalletUpdated:
    block_number: int
    transaction_hash: str
    log_index: int
    contract_address: str
    reserve_id: str
    rebate_wallet: str

    kind = 'rebate_wallet_updated'


EventVariant = Union[TradeExecuted, FeeDistributed, ReserveRegistered, RebateWalletUpdated]


def _str_ints(values) -> list:
    return [str(v) for v in values]


@dataclass(frozen=True)
class TradeRecord:
    """A fully enriched trade; never constructed without gas and timestamp data"""
    transaction_hash: str
    block_number: int
    log_index: int
    contract_address: str
    timestamp: int
    user_address: str
    src_token: str
    dest_token: str
    src_amount: int
    eth_amount: int
    network_fee: int
    platform_fee: int
    src_reserves: Tuple[str, ...]
    dst_reserves: Tuple[str, ...]
    t2e_rates: Tuple[int, ...]
    e2t_rates: Tuple[int, ...]
    gas_used: int
    gas_price: int
    transaction_fee: int
    is_volume_excluded: bool

    record_type = 'trade'

    @property
    def natural_key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_hash': self.transaction_hash,
            'block_number': self.block_number,
            'log_index': self.log_index,
            'contract_address': self.contract_address,
            'timestamp': self.timestamp,
            'user_address': self.user_address,
            'src_token': self.src_token,
            'dest_token': self.dest_token,
            'src_amount': str(self.src_amount),
            'eth_amount': str(self.eth_amount),
            'network_fee': str(self.network_fee),
            'platform_fee': str(self.platform_fee),
            'src_reserves': list(self.src_reserves),
            'dst_reserves': list(self.dst_reserves),
            't2e_rates': _str_ints(self.t2e_rates),
            'e2t_rates': _str_ints(self.e2t_rates),
            'gas_used': self.gas_used,
            'gas_price': str(self.gas_price),
            'transaction_fee': str(self.transaction_fee),
            'is_volume_excluded': self.is_volume_excluded,
        }


@dataclass(frozen=True)
class FeeDistributionRecord:
    transaction_hash: str
    block_number: int
    log_index: int
    contract_address: str
    token: str
    platform_wallet: str
    platform_fee: int
    reward: int
    rebate: int
    rebate_wallets: Tuple[str, ...]
    rebate_percent_bps: Tuple[int, ...]
    burn_amount: int

    record_type = 'fee_distributed'

    @classmethod
    def from_event(cls, event: FeeDistributed) -> "FeeDistributionRecord":
        return cls(
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            log_index=event.log_index,
            contract_address=event.contract_address,
            token=event.token,
            platform_wallet=event.platform_wallet,
            platform_fee=event.platform_fee_wei,
            reward=event.reward_wei,
            rebate=event.rebate_wei,
            rebate_wallets=event.rebate_wallets,
            rebate_percent_bps=event.rebate_percent_bps,
            burn_amount=event.burn_amount_wei,
        )

    @property
    def natural_key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_hash': self.transaction_hash,
            'block_number': self.block_number,
            'log_index': self.log_index,
            'contract_address': self.contract_address,
            'token': self.token,
            'platform_wallet': self.platform_wallet,
            'platform_fee': str(self.platform_fee),
            'reward': str(self.reward),
            'rebate': str(self.rebate),
            'rebate_wallets': list(self.rebate_wallets),
            'rebate_percent_bps': list(self.rebate_percent_bps),
            'burn_amount': str(self.burn_amount),
        }


@dataclass(frozen=True)
class RegistryUpdateRecord:
    """Output line for ReserveRegistered and RebateWalletUpdated events"""
    transaction_hash: str
    block_number: int
    log_index: int
    contract_address: str
    action: str
    reserve_id: str
    rebate_wallet: str
    reserve_address: Optional[str] = None
    reserve_type: Optional[int] = None
    add: Optional[bool] = None

    record_type = 'registry_update'

    @classmethod
    def from_event(cls, event: Union[ReserveRegistered, RebateWalletUpdated]) -> "RegistryUpdateRecord":
        return cls(
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            log_index=event.log_index,
            contract_address=event.contract_address,
            action=event.kind,
            reserve_id=event.reserve_id,
            rebate_wallet=event.rebate_wallet,
            reserve_address=getattr(event, 'reserve_address', None),
            reserve_type=getattr(event, 'reserve_type', None),
            add=getattr(event, 'add', None),
        )

    @property
    def natural_key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_hash': self.transaction_hash,
            'block_number': self.block_number,
            'log_index': self.log_index,
            'contract_address': self.contract_address,
            'action': self.action,
            'reserve_id': self.reserve_id,
            'rebate_wallet': self.rebate_wallet,
            'reserve_address': self.reserve_address,
            'reserve_type': self.reserve_type,
            'add': self.add,
        }


OutputRecord = Union[TradeRecord, FeeDistributionRecord, RegistryUpdateRecord]


@dataclass(frozen=True)
class ReserveEntry:
    reserve_address: Optional[str]
    rebate_wallet: Optional[str]
    updated_block: int = 0
    active: bool = True


@dataclass
class ReserveRegistryState:
    """Reserve id -> {reserve address, rebate wallet, active}.

    Owned by a single crawl run: the assembler mutates a copy while it walks a
    window, and the crawler only swaps it in once the window is persisted.
    """
    reserves: Dict[str, ReserveEntry] = field(default_factory=dict)

    def __contains__(self, reserve_id: str) -> bool:
        return normalize_hex(reserve_id) in self.reserves

    def __len__(self) -> int:
        return len(self.reserves)

    def __iter__(self) -> Iterator[str]:
        return iter(self.reserves)

    def get(self, reserve_id: str) -> Optional[ReserveEntry]:
        return self.reserves.get(normalize_hex(reserve_id))

    def address_of(self, reserve_id: str) -> Optional[str]:
        entry = self.get(reserve_id)
        return entry.reserve_address if entry else None

    def apply(self, event: Union[ReserveRegistered, RebateWalletUpdated]) -> None:
        """Apply a registry event in chain order"""
        reserve_id = normalize_hex(event.reserve_id)
        if isinstance(event, ReserveRegistered):
            self.reserves[reserve_id] = ReserveEntry(
                reserve_address=event.reserve_address,
                rebate_wallet=event.rebate_wallet,
                updated_block=event.block_number,
                active=event.add,
            )
        else:
            # Wallet updates for ids we have not seen registered still record the wallet
            current = self.reserves.get(reserve_id)
            self.reserves[reserve_id] = ReserveEntry(
                reserve_address=current.reserve_address if current else None,
                rebate_wallet=event.rebate_wallet,
                updated_block=event.block_number,
                active=current.active if current else True,
            )

    def copy(self) -> "ReserveRegistryState":
        return ReserveRegistryState(reserves=dict(self.reserves))
