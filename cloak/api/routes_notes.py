from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from cloak.api.deps import get_store
from cloak.api.logging_config import get_logger, short
from cloak.api.notes import parse_note
from cloak.api.schemas_api import CloakNote, NoteListRes, NoteStatus
from cloak.crypto_core.commitments import NoteFormatError
from cloak.database.note_store import DuplicateNoteError, NoteStore

logger = get_logger("routes.notes")

router = APIRouter(prefix="/notes", tags=["notes"])

SECRET_KEYS = ("sk_spend", "r")


def _public(note: CloakNote) -> Dict[str, Any]:
    """Export form minus the spend secrets."""
    d = note.to_json_dict()
    for k in SECRET_KEYS:
        d.pop(k, None)
    return d


def _listing(notes: List[CloakNote]) -> NoteListRes:
    return NoteListRes(notes=[_public(n) for n in notes], total_balance=sum(n.amount for n in notes))


@router.post("/import")
def import_note(
    payload: Dict[str, Any] = Body(..., description="Note in export form (web wallet JSON)."),
    store: NoteStore = Depends(get_store),
):
    """
    Validate and store a note. The commitment must re-derive from
    (amount, r, sk_spend); a note already in the store is rejected.
    """
    try:
        note = parse_note(payload)
    except NoteFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        store.save(note)
    except DuplicateNoteError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"imported note {short(note.commitment)} ({note.status})")
    return {"status": "ok", "commitment": note.commitment, "note_status": note.status}


@router.get("", response_model=NoteListRes)
def list_notes(
    status: Optional[NoteStatus] = Query(None, description="generated | deposited | spent"),
    network: Optional[str] = Query(None),
    store: NoteStore = Depends(get_store),
):
    notes = store.load_all()
    if status:
        notes = [n for n in notes if n.status == status]
    if network:
        notes = [n for n in notes if n.network == network]
    return _listing(notes)


@router.get("/spendable", response_model=NoteListRes)
def list_spendable(store: NoteStore = Depends(get_store)):
    return _listing(store.load_spendable())


@router.delete("/{commitment}")
def delete_note(commitment: str, store: NoteStore = Depends(get_store)):
    if not store.delete(commitment):
        raise HTTPException(status_code=404, detail="Note not found")
    return {"status": "ok", "commitment": commitment.lower()}
