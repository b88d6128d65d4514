# crypto_core/merkle.py
"""
Merkle membership checks for note commitments.

Leaves and siblings travel as lowercase hex strings (the indexer's JSON
form). Every node hash is BLAKE3 over the *decoded raw bytes* of the two
children, never over their hex text:

    parent = BLAKE3(bytes.fromhex(left) || bytes.fromhex(right))

path_indices[i] == 0 means the running node is the left child at level i.
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from cloak.crypto_core.hashing import blake3_hash, hex32

ZERO_LEAF = "00" * 32


class MerkleProofFormatError(ValueError):
    """Structurally invalid proof (length mismatch, bad bit, bad hex)."""


class ProofInconsistencyError(RuntimeError):
    """Recomputed root still disagrees with the indexer after a refetch."""

    def __init__(self, leaf_index: int, expected_root: str, computed_root: str):
        self.leaf_index = leaf_index
        self.expected_root = expected_root
        self.computed_root = computed_root
        super().__init__(
            f"Merkle proof for leaf {leaf_index} does not reproduce root "
            f"{expected_root[:16]}... (computed {computed_root[:16]}...)"
        )


@dataclass
class MerkleProof:
    path_elements: List[str]
    path_indices: List[int]
    root: Optional[str] = None


def hash_pair(left: str, right: str) -> str:
    return blake3_hash(hex32(left, "left"), hex32(right, "right")).hex()


def _check_path(path_elements: Sequence[str], path_indices: Sequence[int]) -> None:
    if len(path_elements) != len(path_indices):
        raise MerkleProofFormatError(
            f"path_elements ({len(path_elements)}) and path_indices ({len(path_indices)}) differ in length"
        )
    for i, bit in enumerate(path_indices):
        if bit not in (0, 1) or isinstance(bit, bool):
            raise MerkleProofFormatError(f"path_indices[{i}] must be 0 or 1, got {bit!r}")


def recompute_root(leaf: str, path_elements: Sequence[str], path_indices: Sequence[int]) -> str:
    _check_path(path_elements, path_indices)
    current = leaf.lower()
    hex32(current, "leaf")
    for sibling, bit in zip(path_elements, path_indices):
        try:
            current = hash_pair(current, sibling) if bit == 0 else hash_pair(sibling, current)
        except ValueError as e:
            raise MerkleProofFormatError(str(e)) from e
    return current


def verify_proof(
    leaf: str,
    path_elements: Sequence[str],
    path_indices: Sequence[int],
    root: str,
    leaf_index: Optional[int] = None,
) -> bool:
    """
    True iff the path reproduces ``root``.

    An empty path is only accepted for a single-leaf tree: leaf index 0 (when
    given) and leaf == root. Structural problems raise MerkleProofFormatError.
    """
    _check_path(path_elements, path_indices)
    if not path_elements:
        if leaf_index not in (None, 0):
            return False
        return hmac.compare_digest(leaf.lower(), root.lower())

    if leaf_index is not None:
        # the direction bits spell out the leaf position, LSB first
        position = sum(bit << level for level, bit in enumerate(path_indices))
        if position != leaf_index:
            return False

    computed = recompute_root(leaf, path_elements, path_indices)
    return hmac.compare_digest(computed, root.lower())


async def verify_or_refresh(
    leaf: str,
    leaf_index: int,
    cached: Optional[MerkleProof],
    fetch_proof: Callable[[int], Awaitable[MerkleProof]],
    refetch_attempts: int = 1,
) -> MerkleProof:
    """
    Return a proof for ``leaf`` that verifies locally.

    The cached (deposit-time) proof is tried first. On a mismatch, or when
    nothing is cached, a fresh proof is fetched for the same leaf index, up to
    ``refetch_attempts`` times. Still failing raises ProofInconsistencyError.
    """
    expected = computed = ""
    fetches = refetch_attempts + 1
    # a cached path without its pinned root cannot be checked
    if cached is not None and cached.root:
        fetches = refetch_attempts
        expected = cached.root.lower()
        try:
            computed = recompute_root(leaf, cached.path_elements, cached.path_indices)
            if verify_proof(leaf, cached.path_elements, cached.path_indices, expected, leaf_index):
                return cached
        except MerkleProofFormatError:
            pass  # a corrupt local copy counts as stale
    for _ in range(fetches):
        candidate = await fetch_proof(leaf_index)
        if not candidate.root:
            raise MerkleProofFormatError(f"indexer returned no root for leaf {leaf_index}")
        expected = candidate.root.lower()
        computed = recompute_root(leaf, candidate.path_elements, candidate.path_indices)
        if verify_proof(leaf, candidate.path_elements, candidate.path_indices, expected, leaf_index):
            return candidate
    raise ProofInconsistencyError(leaf_index, expected, computed)


class MerkleTree:
    """
    Local binary tree over hex leaves, padded to a power of two with ZERO_LEAF.

    Used to build fixtures and to sanity check indexer output; the indexer's
    tree remains the source of truth for roots.
    """

    def __init__(self, leaves: Sequence[str]):
        self.leaves: List[str] = [l.lower() for l in leaves]
        self.layers: List[List[str]] = []
        if self.leaves:
            self.build_tree()

    def build_tree(self) -> None:
        layer = list(self.leaves)
        size = 1
        while size < len(layer):
            size *= 2
        layer += [ZERO_LEAF] * (size - len(layer))
        self.layers = [layer]
        while len(layer) > 1:
            layer = [hash_pair(layer[i], layer[i + 1]) for i in range(0, len(layer), 2)]
            self.layers.append(layer)

    @property
    def root(self) -> str:
        if not self.layers:
            return ZERO_LEAF
        return self.layers[-1][0]

    def proof(self, index: int) -> MerkleProof:
        if not 0 <= index < len(self.leaves):
            raise IndexError(f"leaf index {index} out of range")
        elements: List[str] = []
        indices: List[int] = []
        for layer in self.layers[:-1]:
            bit = index & 1
            elements.append(layer[index ^ 1])
            indices.append(bit)
            index >>= 1
        return MerkleProof(path_elements=elements, path_indices=indices, root=self.root)
