"""
Shared fixtures for the Cloak note engine tests.
"""

import pytest

from cloak.api.notes import create_note
from cloak.crypto_core.keys import generate_cloak_keys
from cloak.database.note_store import InMemoryNoteStore

from tests.helpers import OTHER_SEED, SEED, FakeRpc, tree_with


@pytest.fixture
def keys():
    return generate_cloak_keys(SEED)


@pytest.fixture
def other_keys():
    return generate_cloak_keys(OTHER_SEED)


@pytest.fixture
def store():
    return InMemoryNoteStore()


@pytest.fixture
def note(keys):
    return create_note(1_000_000_000, keys, "localnet")


@pytest.fixture
def deposited(store, note):
    """A note stored as deposited at leaf 2 of a 4-leaf tree; returns (note, tree)."""
    tree = tree_with(note.commitment, 2)
    proof = tree.proof(2)
    store.save(note)
    updated = store.update(
        note.commitment,
        {
            "leaf_index": 2,
            "root": tree.root,
            "merkle_proof": {"path_elements": proof.path_elements, "path_indices": proof.path_indices},
            "deposit_signature": "5" * 88,
            "deposit_slot": 1234,
            "status": "deposited",
        },
    )
    return updated, tree


@pytest.fixture
def fake_rpc():
    return FakeRpc()
