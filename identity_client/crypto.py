"""
AES-GCM encryption for credential records at rest.
The key lives in memory only; records written by one process cannot be read by the next.
"""
import base64
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

ENVELOPE_VERSION = 1
ENVELOPE_ALG = "A256GCM"
_NONCE_BYTES = 12


class DecryptionError(Exception):
    """Record is not an envelope, or was sealed under a different key."""


class KeyProvider:
    """Supplies the symmetric key used by the credential store."""

    def get_key(self) -> bytes:
        raise NotImplementedError


class EphemeralKeyProvider(KeyProvider):
    """256-bit key generated on first use and held only by this object."""

    def __init__(self) -> None:
        self._key: bytes | None = None

    def get_key(self) -> bytes:
        if self._key is None:
            self._key = AESGCM.generate_key(bit_length=256)
        return self._key


class StaticKeyProvider(KeyProvider):
    """Caller-owned key (e.g. shared between cooperating processes)."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("AES-256 key must be 32 bytes")
        self._key = key

    def get_key(self) -> bytes:
        return self._key


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def seal(key: bytes, plaintext: str, associated_data: str) -> str:
    """Encrypt plaintext; associated_data (the storage key) binds the record to its slot."""
    nonce = os.urandom(_NONCE_BYTES)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), associated_data.encode("utf-8"))
    return json.dumps({"v": ENVELOPE_VERSION, "alg": ENVELOPE_ALG, "iv": _b64(nonce), "ct": _b64(ct)})


def unseal(key: bytes, raw: str, associated_data: str) -> str:
    try:
        data = json.loads(raw)
        if data.get("v") != ENVELOPE_VERSION or data.get("alg") != ENVELOPE_ALG:
            raise DecryptionError("Unsupported envelope")
        nonce = base64.b64decode(data["iv"])
        ct = base64.b64decode(data["ct"])
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise DecryptionError(f"Malformed envelope: {e}") from e
    try:
        return AESGCM(key).decrypt(nonce, ct, associated_data.encode("utf-8")).decode("utf-8")
    except InvalidTag as e:
        raise DecryptionError("Envelope sealed under a different key") from e
