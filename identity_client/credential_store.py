"""
Credential cache: memory layer in front of encrypted persistence.
Legacy plaintext records are migrated to the encrypted slot the first time they are read.
Persistence is best-effort; storage failures are logged and the cache keeps working from memory.
"""
import json
import logging
import time

from identity_client.crypto import DecryptionError, EphemeralKeyProvider, KeyProvider, seal, unseal
from identity_client.models import CacheEntry
from identity_client.storage import KeyValueStorage, StorageUnavailableError

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(
        self,
        storage: KeyValueStorage | None,
        key_provider: KeyProvider | None = None,
        prefix: str = "idc.",
    ):
        self._storage = storage
        self._key_provider = key_provider or EphemeralKeyProvider()
        self._memory: dict[str, CacheEntry] = {}
        self._token_prefix = f"{prefix}token."
        self._enc_prefix = f"{prefix}token.enc."

    @property
    def persistent(self) -> bool:
        return self._storage is not None

    def _plain_key(self, key: str) -> str:
        return f"{self._token_prefix}{key}"

    def _enc_key(self, key: str) -> str:
        return f"{self._enc_prefix}{key}"

    def _degrade(self, error: Exception) -> None:
        logger.warning("Credential storage unavailable, caching in memory only: %s", error)
        self._storage = None

    def get(self, key: str) -> CacheEntry | None:
        entry = self._memory.get(key)
        if entry is not None:
            return entry
        if self._storage is None:
            return None
        try:
            entry = self._read_encrypted(key)
            if entry is None:
                entry = self._read_legacy(key)
        except StorageUnavailableError as e:
            self._degrade(e)
            return None
        if entry is not None:
            self._memory[key] = entry
        return entry

    def _read_encrypted(self, key: str) -> CacheEntry | None:
        storage_key = self._enc_key(key)
        raw = self._storage.get(storage_key)
        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(json.loads(unseal(self._key_provider.get_key(), raw, storage_key)))
        except DecryptionError as e:
            # Another context's key, or a previous process: not ours to read or delete
            logger.debug("Encrypted credential record %s not readable: %s", key, e)
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding corrupt encrypted credential record %s: %s", key, e)
            self._storage.delete(storage_key)
            return None

    def _read_legacy(self, key: str) -> CacheEntry | None:
        storage_key = self._plain_key(key)
        raw = self._storage.get(storage_key)
        if raw is None:
            return None
        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unparseable plaintext credential record %s", key)
            self._storage.delete(storage_key)
            return None
        if self._write_encrypted(key, entry):
            logger.info("Migrated plaintext credential record %s to encrypted storage", key)
            self._storage.delete(storage_key)
        return entry

    def _write_encrypted(self, key: str, entry: CacheEntry) -> bool:
        storage_key = self._enc_key(key)
        try:
            sealed = seal(self._key_provider.get_key(), json.dumps(entry.to_dict()), storage_key)
        except (ValueError, TypeError) as e:
            logger.warning("Could not encrypt credential record %s: %s", key, e)
            return False
        self._storage.set(storage_key, sealed)
        return True

    def put(self, key: str, entry: CacheEntry, persist: bool = True) -> bool:
        """
        Replace the entry for key. persist=False updates memory only.
        Returns False when the entry could only be cached in memory.
        """
        self._memory[key] = entry
        if not persist:
            return True
        if self._storage is None:
            return False
        try:
            if not self._write_encrypted(key, entry):
                logger.warning("Storing credential record %s without encryption", key)
                self._storage.delete(self._enc_key(key))
                self._storage.set(self._plain_key(key), json.dumps(entry.to_dict()))
                return True
            # A stale plaintext copy must not outlive the encrypted write
            self._storage.delete(self._plain_key(key))
        except StorageUnavailableError as e:
            self._degrade(e)
            return False
        return True

    def evict(self, key: str) -> None:
        self._memory.pop(key, None)
        if self._storage is None:
            return
        try:
            self._storage.delete(self._enc_key(key))
            self._storage.delete(self._plain_key(key))
        except StorageUnavailableError as e:
            self._degrade(e)

    def clear(self) -> None:
        """Drop every cached entry, encrypted or plaintext."""
        self._memory.clear()
        if self._storage is None:
            return
        try:
            for storage_key in self._storage.keys(self._token_prefix):
                self._storage.delete(storage_key)
        except StorageUnavailableError as e:
            self._degrade(e)


def make_entry(credentials, scopes: list[str], account_id: str | None, now: float | None = None) -> CacheEntry:
    return CacheEntry(
        credentials=credentials,
        account_id=account_id or "",
        scopes=sorted(set(scopes)),
        cached_at=time.time() if now is None else now,
    )
