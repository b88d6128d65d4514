# crypto_core/commitments.py
from __future__ import annotations

import hmac
import secrets

from cloak.crypto_core.hashing import blake3_hash, hex32, is_hex32, require_32, u32_le, u64_le


class NoteFormatError(ValueError):
    """Note text/file rejected on import; never persisted."""


def generate_r() -> bytes:
    return secrets.token_bytes(32)


def pk_spend_from_sk(sk_spend: bytes) -> bytes:
    return blake3_hash(require_32(sk_spend, "sk_spend"))


def commit(amount: int, r: bytes, pk_spend: bytes) -> bytes:
    """commitment = BLAKE3(amount_le64 || r || pk_spend)"""
    return blake3_hash(u64_le(amount), require_32(r, "r"), require_32(pk_spend, "pk_spend"))


def commit_hex(amount: int, r_hex: str, sk_spend_hex: str) -> str:
    sk = hex32(sk_spend_hex, "sk_spend")
    return commit(amount, hex32(r_hex, "r"), pk_spend_from_sk(sk)).hex()


def nullifier(sk_spend: bytes, leaf_index: int) -> bytes:
    """nullifier = BLAKE3(sk_spend || leaf_index_le32)"""
    return blake3_hash(require_32(sk_spend, "sk_spend"), u32_le(leaf_index))


def nullifier_hex(sk_spend_hex: str, leaf_index: int) -> str:
    return nullifier(hex32(sk_spend_hex, "sk_spend"), leaf_index).hex()


def validate_note_fields(amount: object, commitment: object, sk_spend: object, r: object) -> None:
    """
    Checks applied to every imported note before it reaches a store or the
    prover: positive u64 amount, 64-hex secrets, and a commitment that
    re-derives from (amount, r, sk_spend).
    """
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise NoteFormatError("Invalid note: amount must be a positive integer (lamports)")
    for name, value in (("commitment", commitment), ("sk_spend", sk_spend), ("r", r)):
        if not is_hex32(value):
            raise NoteFormatError(f"Invalid {name} format")
    try:
        expected = commit_hex(amount, r, sk_spend)
    except ValueError as e:
        raise NoteFormatError(f"Invalid note: {e}") from e
    if not hmac.compare_digest(expected, commitment.lower()):
        raise NoteFormatError("Invalid note: commitment does not match (amount, r, sk_spend)")
