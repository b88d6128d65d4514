"""
Note lifecycle helpers: create, import/export, self-encryption, scanning.

``parse_note`` is the single entry point for note text coming from outside
(files, clipboard, HTTP bodies). Anything it rejects raises NoteFormatError
and never reaches a store.
"""
from __future__ import annotations

import json
from typing import Any, Iterable, List, Union

from pydantic import ValidationError

from cloak import config
from cloak.api.logging_config import get_logger, short
from cloak.api.schemas_api import CloakNote
from cloak.crypto_core.commitments import NoteFormatError, commit, generate_r, validate_note_fields
from cloak.crypto_core.keys import CloakKeys, ViewKeyPair
from cloak.crypto_core.messages import EncryptedNote, encode_envelope, encrypt_note, scan

logger = get_logger("notes")


def create_note(amount: int, keys: CloakKeys, network: str = config.NETWORK) -> CloakNote:
    """Fresh `generated` note owned by ``keys`` with a new blinding factor."""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError("amount must be a positive integer (lamports)")
    r = generate_r()
    commitment = commit(amount, r, keys.spend.pk_spend)
    note = CloakNote(
        amount=amount,
        commitment=commitment.hex(),
        sk_spend=keys.spend.sk_spend_hex,
        r=r.hex(),
        network=network,
        status="generated",
    )
    logger.info(f"created note {short(note.commitment)} for {amount} lamports on {network}")
    return note


def parse_note(source: Union[str, bytes, dict]) -> CloakNote:
    """
    Parse and validate a note from JSON text or an already decoded object.

    Raises:
        NoteFormatError: bad JSON, missing/invalid fields, or a commitment
            that does not re-derive from (amount, r, sk_spend)
    """
    if isinstance(source, (str, bytes)):
        try:
            data: Any = json.loads(source)
        except ValueError as e:
            raise NoteFormatError(f"Invalid note: not JSON ({e})") from e
    else:
        data = source
    if not isinstance(data, dict):
        raise NoteFormatError("Invalid note: expected a JSON object")

    # checked before pydantic so the error names the offending field plainly
    validate_note_fields(data.get("amount"), data.get("commitment"), data.get("sk_spend", data.get("skSpend")), data.get("r"))
    try:
        return CloakNote.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise NoteFormatError(f"Invalid note: {loc}: {first['msg']}") from e


def note_to_json(note: CloakNote, indent: int = 2) -> str:
    """Portable export form (web wallet field names, lowercase hex)."""
    return json.dumps(note.to_json_dict(), indent=indent)


def encrypt_note_for(note: CloakNote, pvk: bytes) -> EncryptedNote:
    return encrypt_note(note.note_data(), pvk)


def encrypt_note_for_indexer(note: CloakNote, pvk: bytes) -> str:
    """Self-delivery envelope registered alongside a deposit, for recovery by scanning."""
    return encode_envelope(encrypt_note_for(note, pvk))


def scan_and_import(
    store,
    view_key: ViewKeyPair,
    outputs: Iterable[Union[EncryptedNote, str]],
    network: str = config.NETWORK,
) -> List[CloakNote]:
    """
    Decrypt ``outputs`` with ``view_key`` and save every discovered note the
    store does not hold yet. Returns the newly imported notes.

    Decrypted payloads that fail validation are skipped and logged; the
    imported notes start as `generated` until their leaf index is resolved.
    """
    imported: List[CloakNote] = []
    for data in scan(outputs, view_key):
        try:
            note = parse_note({**data, "network": network})
        except NoteFormatError as e:
            logger.warning(f"skipping discovered note {short(str(data.get('commitment')))}: {e}")
            continue
        if store.get(note.commitment) is not None:
            continue
        store.save(note)
        imported.append(note)
    if imported:
        logger.info(f"imported {len(imported)} note(s) from scan")
    return imported
