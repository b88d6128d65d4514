"""
Migration utility to move legacy note exports into the note store.

Reads notes saved by older wallets (a JSON array, a {"notes": [...]}
object, or JSONL, with mixed pathElements/path_elements and
leafIndex/leaf_index spellings), validates each one and inserts it into the
configured store in canonical form.

Usage:
    # Dry run (preview changes without committing)
    python -m cloak.database.migrate_from_json legacy_notes.json --dry-run

    # Migrate into the SQL store
    python -m cloak.database.migrate_from_json legacy_notes.json --target sql --verify
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from cloak.api.notes import parse_note
from cloak.crypto_core.commitments import NoteFormatError
from cloak.database.note_store import NoteStore, make_store_from_config


# ============================================================================
# LOADING
# ============================================================================

def load_legacy_notes(file_path: Path) -> List[Dict[str, Any]]:
    """
    Load notes from a JSON array, a {"notes": [...]} object, or JSONL.

    Args:
        file_path: Path to the legacy export

    Returns:
        List of raw note objects
    """
    if not file_path.exists():
        print(f"⚠️  File not found: {file_path}")
        return []

    text = file_path.read_text().strip()
    if not text:
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if isinstance(data, dict):
        notes = data.get("notes")
        return [r for r in notes if isinstance(r, dict)] if isinstance(notes, list) else [data]

    records = []
    for line_num, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            print(f"❌ Error parsing line {line_num} in {file_path}: {e}")
    return records


# ============================================================================
# MIGRATION
# ============================================================================

def migrate_notes(
    records: List[Dict[str, Any]],
    store: NoteStore,
    dry_run: bool = False,
    network: Optional[str] = None,
) -> Dict[str, int]:
    """
    Validate and insert legacy notes.

    Args:
        records: Raw note objects (any legacy spelling)
        store: Target note store
        dry_run: If True, don't write anything
        network: Network to stamp on notes that don't carry one

    Returns:
        Counts: migrated, skipped (already present), invalid
    """
    print("\n📝 Migrating notes...")
    counts = {"migrated": 0, "skipped": 0, "invalid": 0}

    for rec in records:
        if network and "network" not in rec:
            rec = {**rec, "network": network}
        try:
            note = parse_note(rec)
        except NoteFormatError as e:
            print(f"   ❌ Invalid note {str(rec.get('commitment', '???'))[:16]}...: {e}")
            counts["invalid"] += 1
            continue

        if store.get(note.commitment) is not None:
            print(f"   ⏩ Skipping existing note: {note.commitment[:16]}...")
            counts["skipped"] += 1
            continue

        if not dry_run:
            store.save(note)
        print(f"   ✅ Migrated note: {note.commitment[:16]}... ({note.amount / 1e9:.4f} SOL, {note.status})")
        counts["migrated"] += 1

    if dry_run:
        print(f"\n   [DRY RUN] Would migrate {counts['migrated']} notes")
    else:
        print(f"\n   Wrote {counts['migrated']} notes")
    return counts


def verify_migration(records: List[Dict[str, Any]], store: NoteStore) -> bool:
    """Every valid legacy note is present in the store."""
    print("\n🔍 Verifying migration...")
    missing = 0
    valid = 0
    for rec in records:
        try:
            note = parse_note(rec)
        except NoteFormatError:
            continue
        valid += 1
        if store.get(note.commitment) is None:
            missing += 1
    print(f"\n   Notes: {valid - missing} / {valid} present")
    if missing:
        print("\n⚠️  Migration incomplete or had errors")
        return False
    print("\n✅ Migration verified successfully!")
    return True


# ============================================================================
# MAIN
# ============================================================================

def main(argv: Optional[List[str]] = None, store: Optional[NoteStore] = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate legacy note exports into the note store")
    parser.add_argument("source", type=Path, help="Legacy notes file (.json or .jsonl)")
    parser.add_argument("--target", choices=["json", "sql", "memory"], default=None,
                        help="Target store backend (default: NOTE_STORE_BACKEND)")
    parser.add_argument("--network", help="Network for notes that don't record one")
    parser.add_argument("--dry-run", action="store_true",
                        help="Preview changes without committing")
    parser.add_argument("--verify", action="store_true",
                        help="Verify migration after completion")

    args = parser.parse_args(argv)

    print("=" * 60)
    print("📦 Cloak: legacy notes → note store")
    print("=" * 60)

    if args.dry_run:
        print("\n⚠️  DRY RUN MODE: No changes will be committed\n")

    store = store or make_store_from_config(args.target)
    records = load_legacy_notes(args.source)
    if not records:
        print("   No notes to migrate")
        return 0

    counts = migrate_notes(records, store, args.dry_run, args.network)

    ok = True
    if args.verify and not args.dry_run:
        ok = verify_migration(records, store)

    print("\n" + "=" * 60)
    print(f"✅ Migration complete! migrated={counts['migrated']} "
          f"skipped={counts['skipped']} invalid={counts['invalid']}")
    print("=" * 60)

    if args.dry_run:
        print("\n💡 Run without --dry-run to actually migrate the data")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
