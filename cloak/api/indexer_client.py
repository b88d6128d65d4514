"""
Client for the Cloak indexer API (commitment tree + encrypted outputs).
"""
from __future__ import annotations

from typing import List

from pydantic import ValidationError

from cloak import config
from cloak.api.errors import IndexerError
from cloak.api.http_base import ServiceClient
from cloak.api.logging_config import get_logger, short
from cloak.api.schemas_api import DepositRegistration, MerkleProofRes, MerkleRootRes, NotesRangeRes
from cloak.crypto_core.merkle import MerkleProof

logger = get_logger("indexer")


class IndexerClient(ServiceClient):
    error_cls = IndexerError

    def __init__(self, base_url: str = config.INDEXER_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    def _parse(self, model, payload, what: str):
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise IndexerError(f"indexer returned an unusable {what}: {e.errors()[0]['msg']}") from e

    async def submit_deposit(self, commitment: str, encrypted_output: str, tx_signature: str, slot: int) -> DepositRegistration:
        """Register a confirmed deposit; returns the assigned leaf index and the new root."""
        payload = {
            "leaf_commit": commitment,
            "encrypted_output": encrypted_output,
            "tx_signature": tx_signature,
            "slot": slot,
        }
        data = await self._request("POST", "/api/v1/deposit", json=payload)
        reg = self._parse(DepositRegistration, data, "deposit registration")
        logger.info(f"deposit {short(commitment)} registered at leaf {reg.leaf_index}")
        return reg

    async def get_merkle_proof(self, leaf_index: int) -> MerkleProof:
        data = await self._request("GET", f"/api/v1/merkle/proof/{leaf_index}")
        res = self._parse(MerkleProofRes, data, "merkle proof")
        return MerkleProof(path_elements=res.path_elements, path_indices=list(res.path_indices), root=res.root)

    async def get_merkle_root(self) -> MerkleRootRes:
        data = await self._request("GET", "/api/v1/merkle/root")
        return self._parse(MerkleRootRes, data, "merkle root")

    async def get_notes_range(self, start: int, end: int, limit: int = config.INDEXER_PAGE_SIZE) -> NotesRangeRes:
        data = await self._request(
            "GET", "/api/v1/notes/range", params={"start": start, "end": end, "limit": limit}
        )
        return self._parse(NotesRangeRes, data, "notes range")

    async def get_all_notes(self, page_size: int = config.INDEXER_PAGE_SIZE) -> List[str]:
        """Every encrypted output in the tree, fetched in inclusive [start, end] pages."""
        total = (await self.get_merkle_root()).next_index
        notes: List[str] = []
        for start in range(0, total, page_size):
            end = min(start + page_size - 1, total - 1)
            page = await self.get_notes_range(start, end, page_size)
            notes.extend(page.notes)
        return notes

    async def health(self) -> dict:
        return await self._request("GET", "/health")
