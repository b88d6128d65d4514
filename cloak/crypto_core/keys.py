# crypto_core/keys.py
"""
Cloak key hierarchy.

    master_seed (32B, the only backup secret)
      sk_spend  = BLAKE3(master_seed || "cloak_spend_key")
      pk_spend  = BLAKE3(sk_spend)                       folded into commitments
      vk_secret = clamp(BLAKE3(sk_spend || "cloak_view_key_secret"))
      pvk       = X25519(vk_secret, basepoint)           shareable, receive-only

The domain strings are part of the wire format: changing them changes every
derived key.
"""
from __future__ import annotations

import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Optional

from nacl.bindings import crypto_scalarmult_base

from cloak.crypto_core.hashing import blake3_hash, require_32

SPEND_KEY_DOMAIN = b"cloak_spend_key"
VIEW_KEY_DOMAIN = b"cloak_view_key_secret"
KEYS_EXPORT_VERSION = "2.0"


@dataclass(frozen=True)
class SpendKeyPair:
    sk_spend: bytes
    pk_spend: bytes

    @property
    def sk_spend_hex(self) -> str:
        return self.sk_spend.hex()

    @property
    def pk_spend_hex(self) -> str:
        return self.pk_spend.hex()


@dataclass(frozen=True)
class ViewKeyPair:
    vk_secret: bytes
    pvk: bytes

    @property
    def vk_secret_hex(self) -> str:
        return self.vk_secret.hex()

    @property
    def pvk_hex(self) -> str:
        return self.pvk.hex()


@dataclass(frozen=True)
class CloakKeys:
    master_seed: bytes
    spend: SpendKeyPair
    view: ViewKeyPair

    @property
    def master_seed_hex(self) -> str:
        return self.master_seed.hex()


def generate_master_seed() -> bytes:
    return secrets.token_bytes(32)


def derive_spend_key(master_seed: bytes) -> SpendKeyPair:
    seed = require_32(master_seed, "master_seed")
    sk_spend = blake3_hash(seed, SPEND_KEY_DOMAIN)
    return SpendKeyPair(sk_spend=sk_spend, pk_spend=blake3_hash(sk_spend))


def clamp_x25519(raw: bytes) -> bytes:
    k = bytearray(require_32(raw, "scalar"))
    k[0] &= 248
    k[31] &= 127
    k[31] |= 64
    return bytes(k)


def derive_view_key(sk_spend: bytes) -> ViewKeyPair:
    sk = require_32(sk_spend, "sk_spend")
    vk_secret = clamp_x25519(blake3_hash(sk, VIEW_KEY_DOMAIN))
    return ViewKeyPair(vk_secret=vk_secret, pvk=crypto_scalarmult_base(vk_secret))


def generate_cloak_keys(master_seed: Optional[bytes] = None) -> CloakKeys:
    seed = generate_master_seed() if master_seed is None else require_32(master_seed, "master_seed")
    spend = derive_spend_key(seed)
    return CloakKeys(master_seed=seed, spend=spend, view=derive_view_key(spend.sk_spend))


# ---------- backup ----------

def export_keys(keys: CloakKeys) -> str:
    """Backup blob. Contains the master seed: whoever holds it can spend."""
    return json.dumps(
        {
            "version": KEYS_EXPORT_VERSION,
            "master_seed": keys.master_seed_hex,
            "sk_spend": keys.spend.sk_spend_hex,
            "pk_spend": keys.spend.pk_spend_hex,
            "vk_secret": keys.view.vk_secret_hex,
            "pvk": keys.view.pvk_hex,
        },
        indent=2,
    )


def import_keys(exported: str) -> CloakKeys:
    """
    Restore keys from an ``export_keys`` blob.

    Everything is re-derived from ``master_seed``; derived fields present in
    the blob must agree with the re-derivation.
    """
    try:
        parsed = json.loads(exported)
        seed = bytes.fromhex(parsed["master_seed"])
    except (ValueError, KeyError, TypeError) as e:
        raise ValueError(f"Invalid keys format: {e}") from e

    keys = generate_cloak_keys(seed)
    derived = {
        "sk_spend": keys.spend.sk_spend_hex,
        "pk_spend": keys.spend.pk_spend_hex,
        "vk_secret": keys.view.vk_secret_hex,
        "pvk": keys.view.pvk_hex,
    }
    for field, expected in derived.items():
        stored = parsed.get(field)
        if stored is not None and not hmac.compare_digest(str(stored).lower(), expected):
            raise ValueError(f"Invalid keys format: {field} does not match master_seed")
    return keys


def view_key_from_hex(vk_secret_hex: str) -> ViewKeyPair:
    """Rebuild a view keypair from its secret alone (watch-only wallets)."""
    vk_secret = require_32(bytes.fromhex(vk_secret_hex), "vk_secret")
    return ViewKeyPair(vk_secret=vk_secret, pvk=crypto_scalarmult_base(vk_secret))
