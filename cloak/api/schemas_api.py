from __future__ import annotations

import time
from typing import List, Optional, Literal, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator, model_validator

from cloak.crypto_core.hashing import U32_MAX, U64_MAX

HEX32_PATTERN = r"^[0-9a-fA-F]{64}$"
NOTE_VERSION = "2.0"

NoteStatus = Literal["generated", "deposited", "spent"]
STATUS_ORDER: Dict[str, int] = {"generated": 0, "deposited": 1, "spent": 2}

# Alternate spellings seen in indexer responses and older note exports.
# Normalized here once; nothing past this module looks at them.
_LEGACY_KEYS = {
    "leaf_index": "leafIndex",
    "deposit_signature": "depositSignature",
    "deposit_slot": "depositSlot",
    "merkle_proof": "merkleProof",
    "skSpend": "sk_spend",
    "path_elements": "pathElements",
    "path_indices": "pathIndices",
}


def _rename_legacy(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    out = dict(data)
    for old, new in _LEGACY_KEYS.items():
        if old in out:
            value = out.pop(old)
            out.setdefault(new, value)
    return out


class _Base(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        populate_by_name=True,
        extra="ignore",
    )


class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


# =========================
# Notes
# =========================

class MerklePath(_Base):
    path_elements: List[str] = Field(default_factory=list, alias="pathElements", description="Sibling hashes, leaf level first (hex).")
    path_indices: List[conint(ge=0, le=1)] = Field(default_factory=list, alias="pathIndices", description="0 = running node is the left child.")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, v):
        return _rename_legacy(v)

    @field_validator("path_elements")
    @classmethod
    def _lower_hex(cls, v: List[str]) -> List[str]:
        return [e.lower() for e in v]


class NoteData(_Base):
    """Plaintext carried inside an EncryptedNote."""
    amount: conint(ge=0, le=U64_MAX)
    r: str = Field(..., pattern=HEX32_PATTERN)
    sk_spend: str = Field(..., pattern=HEX32_PATTERN)
    commitment: str = Field(..., pattern=HEX32_PATTERN)

    @field_validator("r", "sk_spend", "commitment")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.lower()


class CloakNote(_Base):
    """
    Portable note file / store record.

    JSON keys are the web wallet's: version, amount, commitment, sk_spend, r,
    depositSignature, depositSlot, leafIndex, root, merkleProof, timestamp,
    network, plus status.
    """
    version: str = Field(NOTE_VERSION, description="Note format version.")
    amount: conint(ge=0, le=U64_MAX) = Field(..., description="Amount in lamports.")
    commitment: str = Field(..., pattern=HEX32_PATTERN, description="BLAKE3(amount_le64 || r || pk_spend), hex.")
    sk_spend: str = Field(..., pattern=HEX32_PATTERN, description="Spend key (hex). Secret.")
    r: str = Field(..., pattern=HEX32_PATTERN, description="Blinding factor (hex). Secret.")
    deposit_signature: Optional[str] = Field(None, alias="depositSignature", description="Deposit transaction signature.")
    deposit_slot: Optional[conint(ge=0)] = Field(None, alias="depositSlot", description="Slot of the deposit transaction.")
    leaf_index: Optional[conint(ge=0, le=U32_MAX)] = Field(None, alias="leafIndex", description="Position in the pool Merkle tree.")
    root: Optional[str] = Field(None, pattern=HEX32_PATTERN, description="Root the stored proof was computed against (hex).")
    merkle_proof: Optional[MerklePath] = Field(None, alias="merkleProof", description="Path to `root` at deposit time.")
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000), description="Creation time, ms since epoch.")
    network: str = Field("localnet", description="Solana network the note belongs to.")
    status: Optional[NoteStatus] = Field(None, description="generated | deposited | spent")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, v):
        return _rename_legacy(v)

    @field_validator("commitment", "sk_spend", "r", "root")
    @classmethod
    def _lower(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v

    @model_validator(mode="after")
    def _infer_status(self):
        if self.status is None:
            self.status = "deposited" if self.leaf_index is not None else "generated"
        return self

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def note_data(self) -> Dict[str, Any]:
        return {"amount": self.amount, "r": self.r, "sk_spend": self.sk_spend, "commitment": self.commitment}


# =========================
# Indexer
# =========================

class DepositRegistration(_Base):
    leaf_index: conint(ge=0, le=U32_MAX) = Field(..., alias="leafIndex")
    root: str = Field(..., pattern=HEX32_PATTERN)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, v):
        return _rename_legacy(v)


class MerkleProofRes(MerklePath):
    root: Optional[str] = Field(None, pattern=HEX32_PATTERN)


class MerkleRootRes(_Base):
    root: str
    next_index: conint(ge=0)


class NotesRangeRes(_Base):
    notes: List[str] = Field(default_factory=list, description="base64 encrypted outputs")
    has_more: bool = False
    total: int = 0
    start: int = 0
    end: int = 0


# =========================
# Prover
# =========================

class PrivateInputs(_Base):
    amount: int
    r: str
    sk_spend: str
    leaf_index: int
    merkle_path: MerklePath


class PublicInputs(_Base):
    root: str
    nf: str
    outputs_hash: str
    amount: int


class ProverOutput(_Base):
    address: str
    amount: int


class SwapParams(_Base):
    output_mint: str = Field(..., description="Output token mint (base58).")
    recipient_ata: str = Field(..., description="Recipient associated token account (base58).")
    min_output_amount: conint(ge=0, le=U64_MAX) = Field(..., description="Minimum amount out, in output token units.")
    slippage_bps: Optional[conint(ge=0, le=10_000)] = None


class StakeParams(_Base):
    stake_account: str
    stake_authority: Optional[str] = None
    validator_vote_account: Optional[str] = None


class UnstakeParams(_Base):
    stake_account: str
    stake_authority: Optional[str] = None


class ProofInputs(_Base):
    private_inputs: PrivateInputs
    public_inputs: PublicInputs
    outputs: List[ProverOutput] = Field(default_factory=list)
    swap_params: Optional[SwapParams] = None
    stake_params: Optional[StakeParams] = None
    unstake_params: Optional[UnstakeParams] = None


class ProofResult(_Base):
    success: bool
    proof: Optional[str] = Field(None, description="Proof bytes (hex).")
    public_inputs: Optional[str] = Field(None, description="Public inputs bytes (hex).")
    generation_time_ms: int = 0
    error: Optional[str] = None


# =========================
# Relay
# =========================

class RelayOutput(_Base):
    recipient: str
    amount: conint(ge=0, le=U64_MAX)


class RelayPublicInputs(_Base):
    root: str
    nf: str
    amount: int
    fee_bps: int
    outputs_hash: str


class RelayWithdrawReq(_Base):
    outputs: List[RelayOutput] = Field(default_factory=list)
    policy: Dict[str, int]
    public_inputs: RelayPublicInputs
    proof_bytes: str = Field(..., description="Proof bytes, base64.")
    swap: Optional[Dict[str, Any]] = None
    stake: Optional[StakeParams] = None
    unstake: Optional[UnstakeParams] = None


class RelayStatus(_Base):
    status: str = Field("unknown", description="queued | processing | completed | failed")
    tx_id: Optional[str] = None
    error: Optional[str] = None


# =========================
# Local wallet API
# =========================

class NoteListRes(Ok):
    notes: List[Dict[str, Any]]
    total_balance: int = Field(..., description="Sum of listed note amounts (lamports).")


class FeeQuoteRes(Ok):
    amount: int
    fee: int
    fixed_fee: int
    variable_fee: int
    distributable: int
    fee_bps: int


class DepositFinalizeReq(_Base):
    commitment: str = Field(..., pattern=HEX32_PATTERN, description="Commitment of a stored note.")
    tx_signature: str = Field(..., min_length=32, description="Confirmed deposit transaction signature.")


class DepositFinalizeRes(Ok):
    leaf_index: int
    root: str
    merkle_proof: MerklePath
    slot: int
