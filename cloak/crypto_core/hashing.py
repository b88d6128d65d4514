# crypto_core/hashing.py
from __future__ import annotations

import re

import blake3

U64_MAX = 2**64 - 1
U32_MAX = 2**32 - 1

_HEX32 = re.compile(r"^[0-9a-fA-F]{64}$")


def blake3_hash(*chunks: bytes) -> bytes:
    """BLAKE3-256 over the concatenation of ``chunks``."""
    h = blake3.blake3()
    for c in chunks:
        h.update(c)
    return h.digest()


def blake3_hex(*chunks: bytes) -> str:
    return blake3_hash(*chunks).hex()


def u64_le(value: int) -> bytes:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"u64 must be an int, got {type(value).__name__}")
    if value < 0 or value > U64_MAX:
        raise ValueError(f"value out of u64 range: {value}")
    return value.to_bytes(8, "little")


def u32_le(value: int) -> bytes:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"u32 must be an int, got {type(value).__name__}")
    if value < 0 or value > U32_MAX:
        raise ValueError(f"value out of u32 range: {value}")
    return value.to_bytes(4, "little")


def is_hex32(value: object) -> bool:
    return isinstance(value, str) and bool(_HEX32.match(value))


def hex32(value: str, name: str = "value") -> bytes:
    if not is_hex32(value):
        raise ValueError(f"{name} must be 64 hex characters")
    return bytes.fromhex(value)


def require_32(value: bytes, name: str = "value") -> bytes:
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        got = len(value) if isinstance(value, (bytes, bytearray)) else type(value).__name__
        raise ValueError(f"{name} must be exactly 32 bytes (got {got})")
    return bytes(value)
