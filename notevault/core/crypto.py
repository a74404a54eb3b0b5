from __future__ import annotations

import base64
import hashlib
import json
import secrets
from typing import Dict, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from notevault.core.errors import NoteVaultError, Severity


class CipherError(NoteVaultError):
    def __init__(self, user_message: str = "Note content could not be decrypted.", **ctx):
        super().__init__("cipher_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


class ContentCipher(Protocol):
    """
    Encrypts note bodies at rest. Key management stays with the caller.
    """

    def encrypt(self, plaintext: str, *, note_id: str) -> str: ...

    def decrypt(self, ciphertext: str, *, note_id: str) -> str: ...


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def generate_content_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(32)


def key_id_from_key_bytes(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()[:16]


def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: bytes = b"") -> Dict[str, object]:
    aes = AESGCM(key)
    nonce = secrets.token_bytes(12)
    ct = aes.encrypt(nonce, plaintext, aad or None)
    return {"v": 1, "nonce": _b64e(nonce), "ciphertext": _b64e(ct)}


def aesgcm_decrypt(key: bytes, blob: Dict[str, object], aad: bytes = b"") -> bytes:
    if blob.get("v") != 1:
        raise CipherError("Unsupported encrypted blob version.")
    aes = AESGCM(key)
    try:
        return aes.decrypt(_b64d(str(blob["nonce"])), _b64d(str(blob["ciphertext"])), aad or None)
    except (InvalidTag, KeyError, ValueError) as e:
        raise CipherError() from e


class AesGcmContentCipher:
    """
    AES-256-GCM with the note id as associated data, so a ciphertext cannot be
    moved onto another note.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != 32:
            raise ValueError("Content key must be 32 bytes (AES-256).")
        self._key = bytes(key)
        self.key_id = key_id_from_key_bytes(self._key)

    def encrypt(self, plaintext: str, *, note_id: str) -> str:
        blob = aesgcm_encrypt(self._key, str(plaintext).encode("utf-8"), aad=str(note_id).encode("utf-8"))
        blob["kid"] = self.key_id
        return json.dumps(blob, sort_keys=True)

    def decrypt(self, ciphertext: str, *, note_id: str) -> str:
        try:
            blob = json.loads(ciphertext)
        except json.JSONDecodeError as e:
            raise CipherError() from e
        if not isinstance(blob, dict):
            raise CipherError()
        return aesgcm_decrypt(self._key, blob, aad=str(note_id).encode("utf-8")).decode("utf-8")
