"""
FastAPI dependency providers. Tests swap these via app.dependency_overrides.
"""
from __future__ import annotations

from functools import lru_cache

from cloak import config
from cloak.api.flows import InFlightRegistry
from cloak.api.indexer_client import IndexerClient
from cloak.api.rpc_client import SolanaRpcClient
from cloak.database.note_store import NoteStore, make_store_from_config

_registry = InFlightRegistry()


@lru_cache(maxsize=1)
def _default_store() -> NoteStore:
    return make_store_from_config()


def get_store() -> NoteStore:
    return _default_store()


def get_registry() -> InFlightRegistry:
    return _registry


async def get_indexer():
    client = IndexerClient(config.INDEXER_URL)
    try:
        yield client
    finally:
        await client.aclose()


async def get_rpc():
    client = SolanaRpcClient(config.SOLANA_RPC_URL)
    try:
        yield client
    finally:
        await client.aclose()
