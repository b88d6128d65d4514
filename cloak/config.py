# cloak/config.py
from __future__ import annotations

import os
import pathlib

# =========================
# Paths
# =========================

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[1])
DATA_DIR = os.getenv("DATA_DIR", os.path.join(REPO_ROOT, "data"))

NOTES_PATH = os.getenv("NOTES_PATH", os.path.join(DATA_DIR, "cloak_notes.json"))
KEYS_PATH = os.getenv("KEYS_PATH", os.path.join(DATA_DIR, "cloak_wallet_keys.json"))
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///" + os.path.join(DATA_DIR, "cloak.db"))

# json | sql | memory
NOTE_STORE_BACKEND = os.getenv("NOTE_STORE_BACKEND", "json")

# 32-byte hex key; when set, the SQL store encrypts sk_spend and r at rest
CLOAK_FIELD_KEY = os.getenv("CLOAK_FIELD_KEY", "")

# =========================
# External services
# =========================

INDEXER_URL = os.getenv("INDEXER_URL", "http://127.0.0.1:3001")
RELAY_URL = os.getenv("RELAY_URL", "http://127.0.0.1:3002")
PROVER_URL = os.getenv("PROVER_URL", INDEXER_URL.rstrip("/") + "/api/v1/prove")
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "http://127.0.0.1:8899")

HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "30"))
PROVER_TIMEOUT_SEC = float(os.getenv("PROVER_TIMEOUT_SEC", "300"))

# =========================
# Bounded polling
# =========================

CONFIRM_POLL_INTERVAL_SEC = float(os.getenv("CONFIRM_POLL_INTERVAL_SEC", "2"))
CONFIRM_MAX_ATTEMPTS = int(os.getenv("CONFIRM_MAX_ATTEMPTS", "30"))

RELAY_POLL_INTERVAL_SEC = float(os.getenv("RELAY_POLL_INTERVAL_SEC", "5"))
RELAY_MAX_ATTEMPTS = int(os.getenv("RELAY_MAX_ATTEMPTS", "120"))  # 10 minutes at 5s

# Extra proof fetches after a local root mismatch
MERKLE_REFETCH_ATTEMPTS = int(os.getenv("MERKLE_REFETCH_ATTEMPTS", "1"))

INDEXER_PAGE_SIZE = int(os.getenv("INDEXER_PAGE_SIZE", "100"))

# =========================
# Network
# =========================

NETWORKS = ("localnet", "devnet", "testnet", "mainnet")


def detect_network(rpc_url: str) -> str:
    url = rpc_url.lower()
    if "localhost" in url or "127.0.0.1" in url or "8899" in url:
        return "localnet"
    if "devnet" in url:
        return "devnet"
    if "testnet" in url:
        return "testnet"
    # Unknown hosts are treated as mainnet
    return "mainnet"


NETWORK = os.getenv("CLOAK_NETWORK") or detect_network(SOLANA_RPC_URL)


def explorer_url(signature: str, network: str, rpc_url: str | None = None) -> str:
    base = f"https://explorer.solana.com/tx/{signature}"
    if network == "localnet" and rpc_url:
        from urllib.parse import quote

        return f"{base}?cluster=custom&customUrl={quote(rpc_url, safe='')}"
    if network in ("devnet", "testnet"):
        return f"{base}?cluster={network}"
    return base
