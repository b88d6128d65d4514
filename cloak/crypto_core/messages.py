from __future__ import annotations
from typing import Iterable, List, Optional, Tuple, Union
import base64, json
from dataclasses import dataclass
from nacl.public import PrivateKey, PublicKey, Box
from nacl.secret import SecretBox
from nacl.exceptions import CryptoError
from nacl.utils import random as nacl_random

from cloak.api.schemas_api import NoteData
from cloak.crypto_core.keys import ViewKeyPair

NONCE_SIZE = SecretBox.NONCE_SIZE  # 24
NOTE_FIELDS = ("amount", "r", "sk_spend", "commitment")


@dataclass(frozen=True)
class EncryptedNote:
    ephemeral_pk: str  # hex, 32B
    ciphertext: str    # hex, secretbox output (MAC || cipher)
    nonce: str         # hex, 24B

    def to_dict(self) -> dict:
        return {"ephemeral_pk": self.ephemeral_pk, "ciphertext": self.ciphertext, "nonce": self.nonce}


def shared_key(my_sk32: bytes, peer_pk32: bytes) -> bytes:
    # X25519 + HSalsa20 (crypto_box_beforenm); same key on both sides
    return Box(PrivateKey(my_sk32), PublicKey(peer_pk32)).shared_key()


def xsalsa_encrypt(key32: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    sb = SecretBox(key32)  # XSalsa20-Poly1305
    nonce = nacl_random(NONCE_SIZE)
    ct = sb.encrypt(plaintext, nonce)  # nonce||cipher; we keep the nonce separately
    return nonce, ct.ciphertext


def xsalsa_decrypt(key32: bytes, nonce24: bytes, ciphertext: bytes) -> bytes:
    return SecretBox(key32).decrypt(ciphertext, nonce24)


def canonical_note_bytes(note_data: dict) -> bytes:
    # Compact JSON with a fixed key order; matches JSON.stringify of the web wallet
    missing = [k for k in NOTE_FIELDS if k not in note_data]
    if missing:
        raise ValueError(f"note data missing fields: {', '.join(missing)}")
    ordered = {k: note_data[k] for k in NOTE_FIELDS}
    return json.dumps(ordered, separators=(",", ":")).encode("utf-8")


def encrypt_note(note_data: dict, recipient_pvk: bytes) -> EncryptedNote:
    """
    Encrypt {amount, r, sk_spend, commitment} to a public view key.

    A fresh ephemeral X25519 key and a fresh nonce are drawn per call; the
    ephemeral secret goes out of scope when this returns.
    """
    ephemeral = PrivateKey.generate()
    key = shared_key(bytes(ephemeral), recipient_pvk)
    nonce, ct = xsalsa_encrypt(key, canonical_note_bytes(note_data))
    return EncryptedNote(
        ephemeral_pk=bytes(ephemeral.public_key).hex(),
        ciphertext=ct.hex(),
        nonce=nonce.hex(),
    )


def _parse_note_data(raw: bytes) -> dict:
    # pydantic ValidationError is a ValueError
    return NoteData.model_validate_json(raw).model_dump()


def try_decrypt(encrypted: EncryptedNote, view_key: ViewKeyPair) -> Optional[dict]:
    """None when the note is not ours or is malformed; both look the same."""
    try:
        key = shared_key(view_key.vk_secret, bytes.fromhex(encrypted.ephemeral_pk))
        plaintext = xsalsa_decrypt(key, bytes.fromhex(encrypted.nonce), bytes.fromhex(encrypted.ciphertext))
        return _parse_note_data(plaintext)
    except (CryptoError, ValueError, TypeError, AttributeError):
        return None


# ---------- indexer wire form: base64(JSON(EncryptedNote)) ----------

def encode_envelope(encrypted: EncryptedNote) -> str:
    return base64.b64encode(json.dumps(encrypted.to_dict(), separators=(",", ":")).encode()).decode()


def decode_envelope(envelope: str) -> EncryptedNote:
    obj = json.loads(base64.b64decode(envelope, validate=True))
    return EncryptedNote(
        ephemeral_pk=str(obj["ephemeral_pk"]),
        ciphertext=str(obj["ciphertext"]),
        nonce=str(obj["nonce"]),
    )


def scan(outputs: Iterable[Union[EncryptedNote, str]], view_key: ViewKeyPair) -> List[dict]:
    found: List[dict] = []
    for item in outputs:
        try:
            enc = item if isinstance(item, EncryptedNote) else decode_envelope(item)
        except (ValueError, KeyError, TypeError):
            continue
        note = try_decrypt(enc, view_key)
        if note is not None:
            found.append(note)
    return found
