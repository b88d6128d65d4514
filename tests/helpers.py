"""
Test doubles and small builders shared across the test modules.
"""

import secrets

import base58
import httpx

from cloak.api.schemas_api import DepositRegistration
from cloak.crypto_core.merkle import MerkleProof, MerkleTree

SEED = bytes(range(32))
OTHER_SEED = bytes([7]) * 32


def address(n: int) -> str:
    """Deterministic base58 Solana address."""
    return base58.b58encode(bytes([n]) * 32).decode()


async def no_sleep(_seconds):
    return None


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def tree_with(commitment: str, leaf_index: int = 2, size: int = 4) -> MerkleTree:
    leaves = [secrets.token_hex(32) for _ in range(size)]
    leaves[leaf_index] = commitment
    return MerkleTree(leaves)


def flip_first_byte(hex_value: str) -> str:
    return format(int(hex_value[:2], 16) ^ 0x01, "02x") + hex_value[2:]


class FakeIndexer:
    """In-process indexer over a local MerkleTree."""

    def __init__(self, tree: MerkleTree, leaf_index: int = 2, corrupt_proofs: int = 0):
        self.tree = tree
        self.leaf_index = leaf_index
        self.corrupt_proofs = corrupt_proofs
        self.proof_calls = 0
        self.deposits = []

    async def submit_deposit(self, commitment, encrypted_output, tx_signature, slot):
        self.deposits.append(
            {"commitment": commitment, "encrypted_output": encrypted_output, "tx_signature": tx_signature, "slot": slot}
        )
        return DepositRegistration(leaf_index=self.leaf_index, root=self.tree.root)

    async def get_merkle_proof(self, leaf_index):
        self.proof_calls += 1
        proof = self.tree.proof(leaf_index)
        if self.corrupt_proofs > 0:
            self.corrupt_proofs -= 1
            elements = [flip_first_byte(proof.path_elements[0])] + proof.path_elements[1:]
            proof = MerkleProof(elements, proof.path_indices, proof.root)
        return proof


class FakeRpc:
    def __init__(self, slot: int = 4242, error: Exception = None):
        self.slot = slot
        self.error = error
        self.confirmed = []

    async def confirm_transaction(self, signature, interval=None, max_attempts=None, **kwargs):
        self.confirmed.append(signature)
        if self.error is not None:
            raise self.error
        return self.slot
