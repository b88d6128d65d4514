from __future__ import annotations
import base64, hashlib, os
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

FIELD_PREFIX = "enc1:"


class FieldDecryptionError(ValueError):
    pass


class FieldEncryption:
    """
    AES-256-GCM for note secrets at rest.

    One subkey per (field, context) via HKDF, so a ciphertext copied from one
    row or column into another fails authentication.
    """

    def __init__(self, master_key: bytes):
        if len(master_key) != 32:
            raise ValueError("field encryption key must be 32 bytes")
        self._master = master_key

    @classmethod
    def from_hex(cls, key_hex: str) -> "FieldEncryption":
        return cls(bytes.fromhex(key_hex))

    def _subkey(self, field: str, context: str) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"cloak-field-v1|" + field.encode() + b"|" + context.encode(),
        )
        return hkdf.derive(self._master)

    def encrypt(self, value: str, field: str, context: str) -> str:
        nonce = os.urandom(12)
        ct = AESGCM(self._subkey(field, context)).encrypt(nonce, value.encode("utf-8"), None)
        return FIELD_PREFIX + base64.b64encode(nonce + ct).decode()

    def decrypt(self, token: str, field: str, context: str) -> str:
        if not is_encrypted(token):
            raise FieldDecryptionError(f"{field} is not an encrypted value")
        blob = base64.b64decode(token[len(FIELD_PREFIX):])
        try:
            pt = AESGCM(self._subkey(field, context)).decrypt(blob[:12], blob[12:], None)
        except InvalidTag as e:
            raise FieldDecryptionError(f"cannot decrypt {field}: wrong key or tampered value") from e
        return pt.decode("utf-8")


def is_encrypted(value: str | None) -> bool:
    return bool(value) and value.startswith(FIELD_PREFIX)


def key_fingerprint(master_key: bytes) -> str:
    return hashlib.sha256(b"cloak-field-key|" + master_key).hexdigest()[:16]
