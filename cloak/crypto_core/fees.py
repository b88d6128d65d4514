# crypto_core/fees.py
"""
Pool fee schedule and the outputs hash that binds payouts into the proof.

Both must match the circuit and the on-chain program bit for bit, so all
arithmetic here is on Python ints (no float, no Decimal rounding modes).
"""
from __future__ import annotations

from typing import List, Sequence, Tuple, Union

import base58

from cloak.crypto_core.hashing import U64_MAX, blake3_hash, u64_le

FIXED_FEE_LAMPORTS = 2_500_000  # 0.0025 SOL
VARIABLE_FEE_NUMERATOR = 5
VARIABLE_FEE_DENOMINATOR = 1_000  # 0.5%
BPS_DENOMINATOR = 10_000

Address = Union[str, bytes]
Output = Tuple[Address, int]


class ConservationError(AssertionError):
    """sum(outputs) + fee != note amount. A bug, never a user error."""


def _check_amount(amount: int) -> int:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise TypeError(f"amount must be an int (lamports), got {type(amount).__name__}")
    if amount < 0 or amount > U64_MAX:
        raise ValueError(f"amount out of u64 range: {amount}")
    return amount


def variable_fee(amount: int) -> int:
    return _check_amount(amount) * VARIABLE_FEE_NUMERATOR // VARIABLE_FEE_DENOMINATOR


def fee(amount: int) -> int:
    return FIXED_FEE_LAMPORTS + variable_fee(amount)


def distributable_amount(amount: int) -> int:
    """What is left for outputs; negative when the note cannot cover the fee."""
    return amount - fee(amount)


def relay_fee_bps(amount: int, fee_lamports: int) -> int:
    # ceil(fee * 10000 / amount)
    if _check_amount(amount) == 0:
        return 0
    return -(-fee_lamports * BPS_DENOMINATOR // amount)


def check_conservation(output_amounts: Sequence[int], fee_lamports: int, amount: int) -> None:
    for a in output_amounts:
        if not isinstance(a, int) or isinstance(a, bool) or a < 0:
            raise ConservationError(f"invalid output amount: {a!r}")
    total = sum(output_amounts)
    if total + fee_lamports != amount:
        raise ConservationError(
            f"Amount conservation failed: outputs ({total}) + fee ({fee_lamports}) = "
            f"{total + fee_lamports} != note amount ({amount})"
        )


def pubkey_bytes(address: Address) -> bytes:
    """Solana address (base58 text or raw 32 bytes) to its 32 raw bytes."""
    raw = bytes(address) if isinstance(address, (bytes, bytearray)) else base58.b58decode(address.strip())
    if len(raw) != 32:
        raise ValueError(f"Invalid address length: {len(raw)}, expected 32")
    return raw


def _outputs_preimage(outputs: Sequence[Output]) -> List[bytes]:
    chunks: List[bytes] = []
    for address, amount in outputs:
        chunks.append(pubkey_bytes(address))
        chunks.append(u64_le(amount))
    return chunks


def outputs_hash(outputs: Sequence[Output]) -> bytes:
    """Send: H(pk_1 || amount_1_le64 || ... ), in payout order."""
    return blake3_hash(*_outputs_preimage(outputs))


def swap_outputs_hash(output_mint: Address, recipient_ata: Address, min_output_amount: int, amount: int) -> bytes:
    return blake3_hash(
        pubkey_bytes(output_mint),
        pubkey_bytes(recipient_ata),
        u64_le(min_output_amount),
        u64_le(amount),
    )


def stake_outputs_hash(stake_account: Address, amount: int) -> bytes:
    return blake3_hash(pubkey_bytes(stake_account), u64_le(amount))


def unstake_outputs_hash(stake_account: Address, outputs: Sequence[Output]) -> bytes:
    return blake3_hash(pubkey_bytes(stake_account), *_outputs_preimage(outputs))
