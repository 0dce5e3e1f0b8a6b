"""
Address and hash normalization shared by the decoders, chain client and storage.
"""

from typing import Any

from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_hex(value: Any) -> str:
    """Normalize bytes/HexBytes/str to a lowercase hex string with 0x prefix"""
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    s = str(value).strip()
    if s.startswith(('0x', '0X')):
        s = s[2:]
    return '0x' + s.lower()


def normalize_address(address_raw: Any) -> str:
    """Normalize an address to checksummed format, handling YAML int conversion"""
    if isinstance(address_raw, bool):
        raise ValueError(f"Invalid address: {address_raw!r}")
    if isinstance(address_raw, int):
        if address_raw < 0:
            raise ValueError(f"Invalid integer address: {address_raw}")
        address_hex = f"0x{address_raw:040x}"
    elif isinstance(address_raw, (bytes, bytearray)):
        address_hex = '0x' + bytes(address_raw)[-20:].hex()
    else:
        address_hex = str(address_raw).strip()
    return Web3.to_checksum_address(address_hex)
