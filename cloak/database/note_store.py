"""
Commitment-keyed note repositories.

Callers depend on the NoteStore protocol and get a backend injected:

- InMemoryNoteStore   tests and ephemeral sessions
- JsonFileNoteStore   one JSON array on disk, rewritten atomically
- SqlNoteStore        SQLAlchemy, optional at-rest encryption of sk_spend and r

Status only moves forward (generated -> deposited -> spent). An update that
would move it back keeps the later status.
"""
from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from cloak import config
from cloak.api.logging_config import get_logger, short
from cloak.api.schemas_api import STATUS_ORDER, CloakNote
from cloak.crypto_core.field_encryption import FieldEncryption, is_encrypted
from cloak.database.models import NoteRecord

logger = get_logger("database.store")

_ALIAS_TO_NAME = {f.alias: name for name, f in CloakNote.model_fields.items() if f.alias}


class DuplicateNoteError(ValueError):
    def __init__(self, commitment: str):
        self.commitment = commitment
        super().__init__(f"note {commitment[:16]}... already exists")


@runtime_checkable
class NoteStore(Protocol):
    def save(self, note: CloakNote) -> None: ...

    def get(self, commitment: str) -> Optional[CloakNote]: ...

    def update(self, commitment: str, fields: Dict[str, Any]) -> Optional[CloakNote]: ...

    def delete(self, commitment: str) -> bool: ...

    def load_all(self) -> List[CloakNote]: ...

    def load_spendable(self) -> List[CloakNote]: ...


def is_spendable(note: CloakNote) -> bool:
    return note.status == "deposited" and note.leaf_index is not None


def merge_note(existing: CloakNote, fields: Dict[str, Any]) -> CloakNote:
    """Apply a partial update (python names or JSON aliases) to ``existing``."""
    patch = {_ALIAS_TO_NAME.get(k, k): v for k, v in fields.items()}
    if "commitment" in patch and str(patch["commitment"]).lower() != existing.commitment:
        raise ValueError("commitment is immutable")
    new_status = patch.get("status")
    if new_status is not None and STATUS_ORDER.get(new_status, -1) < STATUS_ORDER[existing.status]:
        logger.debug(f"ignoring status regression {existing.status} -> {new_status} for {short(existing.commitment)}")
        patch["status"] = existing.status
    merged = existing.model_dump()
    merged.update(patch)
    return CloakNote.model_validate(merged)


class _BaseStore:
    def load_spendable(self) -> List[CloakNote]:
        return [n for n in self.load_all() if is_spendable(n)]


# =========================
# In-memory
# =========================

class InMemoryNoteStore(_BaseStore):
    def __init__(self, notes: Optional[List[CloakNote]] = None):
        self._notes: Dict[str, CloakNote] = {}
        self._lock = threading.Lock()
        for n in notes or []:
            self.save(n)

    def save(self, note: CloakNote) -> None:
        with self._lock:
            if note.commitment in self._notes:
                raise DuplicateNoteError(note.commitment)
            self._notes[note.commitment] = note.model_copy(deep=True)

    def get(self, commitment: str) -> Optional[CloakNote]:
        note = self._notes.get(commitment.lower())
        return note.model_copy(deep=True) if note else None

    def update(self, commitment: str, fields: Dict[str, Any]) -> Optional[CloakNote]:
        with self._lock:
            existing = self._notes.get(commitment.lower())
            if existing is None:
                return None
            merged = merge_note(existing, fields)
            self._notes[merged.commitment] = merged
            return merged.model_copy(deep=True)

    def delete(self, commitment: str) -> bool:
        with self._lock:
            return self._notes.pop(commitment.lower(), None) is not None

    def load_all(self) -> List[CloakNote]:
        return [n.model_copy(deep=True) for n in self._notes.values()]


# =========================
# JSON file
# =========================

class JsonFileNoteStore(_BaseStore):
    """
    Notes kept as a JSON array of export-form objects. Every write goes to a
    temp file in the same directory and is renamed over the original, so a
    crash leaves either the old or the new file.
    """

    def __init__(self, path: str | Path = config.NOTES_PATH):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, CloakNote]:
        if not self.path.exists():
            return {}
        raw = json.loads(self.path.read_text() or "[]")
        if isinstance(raw, dict):
            raw = raw.get("notes", [])
        notes: Dict[str, CloakNote] = {}
        for obj in raw:
            note = CloakNote.model_validate(obj)
            notes[note.commitment] = note
        return notes

    def _write(self, notes: Dict[str, CloakNote]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([n.to_json_dict() for n in notes.values()], indent=2)
        fd, tmp = tempfile.mkstemp(prefix=".notes-", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def save(self, note: CloakNote) -> None:
        with self._lock:
            notes = self._read()
            if note.commitment in notes:
                raise DuplicateNoteError(note.commitment)
            notes[note.commitment] = note
            self._write(notes)
        logger.debug(f"saved note {short(note.commitment)} to {self.path}")

    def get(self, commitment: str) -> Optional[CloakNote]:
        return self._read().get(commitment.lower())

    def update(self, commitment: str, fields: Dict[str, Any]) -> Optional[CloakNote]:
        with self._lock:
            notes = self._read()
            existing = notes.get(commitment.lower())
            if existing is None:
                return None
            merged = merge_note(existing, fields)
            notes[merged.commitment] = merged
            self._write(notes)
            return merged

    def delete(self, commitment: str) -> bool:
        with self._lock:
            notes = self._read()
            if notes.pop(commitment.lower(), None) is None:
                return False
            self._write(notes)
            return True

    def load_all(self) -> List[CloakNote]:
        return list(self._read().values())


# =========================
# SQL
# =========================

SECRET_FIELDS = ("sk_spend", "r")


class SqlNoteStore(_BaseStore):
    """
    SQLAlchemy-backed store. With an encryptor, sk_spend and r are sealed per
    row (context = commitment), so a secret copied between rows won't decrypt.
    """

    def __init__(self, session_factory: sessionmaker, encryptor: Optional[FieldEncryption] = None):
        self._sessions = session_factory
        self._enc = encryptor

    def _seal(self, field: str, value: str, commitment: str) -> str:
        return self._enc.encrypt(value, field, commitment) if self._enc else value

    def _open(self, field: str, value: str, commitment: str) -> str:
        if is_encrypted(value):
            if not self._enc:
                raise ValueError(f"{field} of {commitment[:16]}... is encrypted but no CLOAK_FIELD_KEY is set")
            return self._enc.decrypt(value, field, commitment)
        return value

    def _to_note(self, rec: NoteRecord) -> CloakNote:
        return CloakNote(
            version=rec.version,
            amount=rec.amount,
            commitment=rec.commitment,
            sk_spend=self._open("sk_spend", rec.sk_spend, rec.commitment),
            r=self._open("r", rec.r, rec.commitment),
            deposit_signature=rec.deposit_signature,
            deposit_slot=rec.deposit_slot,
            leaf_index=rec.leaf_index,
            root=rec.root,
            merkle_proof=copy.deepcopy(rec.merkle_proof),
            timestamp=rec.timestamp,
            network=rec.network,
            status=rec.status,
        )

    def _fill(self, rec: NoteRecord, note: CloakNote) -> None:
        rec.version = note.version
        rec.amount = note.amount
        rec.sk_spend = self._seal("sk_spend", note.sk_spend, note.commitment)
        rec.r = self._seal("r", note.r, note.commitment)
        rec.deposit_signature = note.deposit_signature
        rec.deposit_slot = note.deposit_slot
        rec.leaf_index = note.leaf_index
        rec.root = note.root
        rec.merkle_proof = note.merkle_proof.model_dump() if note.merkle_proof else None
        rec.timestamp = note.timestamp
        rec.network = note.network
        rec.status = note.status

    def save(self, note: CloakNote) -> None:
        with self._sessions() as session, session.begin():
            if session.get(NoteRecord, note.commitment) is not None:
                raise DuplicateNoteError(note.commitment)
            rec = NoteRecord(commitment=note.commitment)
            self._fill(rec, note)
            session.add(rec)

    def get(self, commitment: str) -> Optional[CloakNote]:
        with self._sessions() as session:
            rec = session.get(NoteRecord, commitment.lower())
            return self._to_note(rec) if rec else None

    def update(self, commitment: str, fields: Dict[str, Any]) -> Optional[CloakNote]:
        with self._sessions() as session, session.begin():
            rec = session.get(NoteRecord, commitment.lower(), with_for_update=True)
            if rec is None:
                return None
            merged = merge_note(self._to_note(rec), fields)
            self._fill(rec, merged)
            return merged

    def delete(self, commitment: str) -> bool:
        with self._sessions() as session, session.begin():
            rec = session.get(NoteRecord, commitment.lower())
            if rec is None:
                return False
            session.delete(rec)
            return True

    def load_all(self) -> List[CloakNote]:
        with self._sessions() as session:
            rows = session.scalars(select(NoteRecord).order_by(NoteRecord.timestamp)).all()
            return [self._to_note(r) for r in rows]

    def load_spendable(self) -> List[CloakNote]:
        with self._sessions() as session:
            stmt = (
                select(NoteRecord)
                .where(NoteRecord.status == "deposited", NoteRecord.leaf_index.is_not(None))
                .order_by(NoteRecord.timestamp)
            )
            return [self._to_note(r) for r in session.scalars(stmt).all()]


def make_store_from_config(backend: Optional[str] = None) -> NoteStore:
    backend = (backend or config.NOTE_STORE_BACKEND).lower()
    if backend == "memory":
        return InMemoryNoteStore()
    if backend == "json":
        return JsonFileNoteStore(config.NOTES_PATH)
    if backend == "sql":
        from cloak.database.config import SessionLocal, get_encryptor, init_database

        init_database()
        return SqlNoteStore(SessionLocal, get_encryptor())
    raise ValueError(f"Unknown NOTE_STORE_BACKEND: {backend!r} (expected json, sql or memory)")
