"""Tests for the encrypted credential store: round trip, read-repair migration, degraded storage."""
import json

from identity_client.credential_store import CredentialStore, make_entry
from identity_client.crypto import EphemeralKeyProvider, StaticKeyProvider
from identity_client.models import cache_key
from identity_client.storage import KeyValueStorage, MemoryStorage, StorageUnavailableError
from identity_client.tests.fakes import SCOPES, make_credentials

NOW = 1_700_000_000.0
KEY = cache_key("user-1", SCOPES)


def _entry():
    return make_entry(make_credentials(NOW), SCOPES, "user-1", now=NOW)


class BrokenStorage(KeyValueStorage):
    def get(self, key):
        raise StorageUnavailableError("storage disabled")

    def set(self, key, value):
        raise StorageUnavailableError("storage disabled")

    def delete(self, key):
        raise StorageUnavailableError("storage disabled")

    def keys(self, prefix=""):
        raise StorageUnavailableError("storage disabled")


def test_cache_key_ignores_scope_order_and_duplicates():
    assert cache_key("a", ["b", "a", "b"]) == cache_key("a", ["a", "b"]) == "a_a|b"
    assert cache_key(None, ["x"]) == "default_x"


def test_round_trip_through_persistence():
    storage = MemoryStorage()
    keys = EphemeralKeyProvider()
    entry = _entry()
    assert CredentialStore(storage, keys).put(KEY, entry) is True

    # Fresh store, same key provider: nothing in memory, read goes through decryption
    assert CredentialStore(storage, keys).get(KEY) == entry


def test_persisted_record_is_encrypted():
    storage = MemoryStorage()
    CredentialStore(storage).put(KEY, _entry())
    raw = storage.get(f"idc.token.enc.{KEY}")
    assert raw is not None
    assert "at-1" not in raw and "rt-1" not in raw
    assert json.loads(raw)["alg"] == "A256GCM"
    assert storage.get(f"idc.token.{KEY}") is None


def test_legacy_plaintext_record_is_migrated_on_read():
    storage = MemoryStorage()
    keys = EphemeralKeyProvider()
    entry = _entry()
    storage.set(f"idc.token.{KEY}", json.dumps(entry.to_dict()))

    assert CredentialStore(storage, keys).get(KEY) == entry
    assert storage.get(f"idc.token.{KEY}") is None
    assert storage.get(f"idc.token.enc.{KEY}") is not None
    # Subsequent read from a fresh store comes through the encrypted path
    assert CredentialStore(storage, keys).get(KEY) == entry


def test_record_from_another_key_counts_as_absent():
    storage = MemoryStorage()
    CredentialStore(storage, StaticKeyProvider(b"a" * 32)).put(KEY, _entry())
    other = CredentialStore(storage, StaticKeyProvider(b"b" * 32))
    assert other.get(KEY) is None
    # Left in place for the context that can read it
    assert storage.get(f"idc.token.enc.{KEY}") is not None


def test_unparseable_legacy_record_is_dropped():
    storage = MemoryStorage()
    storage.set(f"idc.token.{KEY}", "{not json")
    assert CredentialStore(storage).get(KEY) is None
    assert storage.get(f"idc.token.{KEY}") is None


def test_put_replaces_whole_entry_and_removes_plaintext_copy():
    storage = MemoryStorage()
    store = CredentialStore(storage)
    storage.set(f"idc.token.{KEY}", json.dumps(_entry().to_dict()))
    newer = make_entry(make_credentials(NOW + 100, refresh="rt-2"), SCOPES, "user-1", now=NOW + 100)
    store.put(KEY, newer)
    assert store.get(KEY) == newer
    assert storage.get(f"idc.token.{KEY}") is None


def test_memory_only_put_does_not_persist():
    storage = MemoryStorage()
    store = CredentialStore(storage)
    assert store.put(KEY, _entry(), persist=False) is True
    assert store.get(KEY) == _entry()
    assert storage.keys("idc.token.") == []


def test_degrades_to_memory_when_storage_unavailable():
    store = CredentialStore(BrokenStorage())
    entry = _entry()
    assert store.put(KEY, entry) is False
    assert store.persistent is False
    assert store.get(KEY) == entry


def test_memory_mode_has_no_persistence():
    store = CredentialStore(None)
    assert store.put(KEY, _entry()) is False
    assert store.get(KEY) == _entry()
    assert store.get("other") is None


def test_evict_and_clear():
    storage = MemoryStorage()
    store = CredentialStore(storage)
    store.put(KEY, _entry())
    store.put("other_openid", _entry())
    storage.set("idc.token.legacy_x", "{}")
    storage.set("idc.sso.session", "{}")

    store.evict(KEY)
    assert store.get(KEY) is None
    assert storage.get(f"idc.token.enc.{KEY}") is None

    store.clear()
    assert store.get("other_openid") is None
    assert storage.keys("idc.token.") == []
    assert storage.get("idc.sso.session") == "{}"


def test_credentials_expiring_inside_buffer():
    creds = make_credentials(1000.0, expires_in=3600)
    assert not creds.is_expiring(300, now=1000.0)
    assert creds.is_expiring(300, now=1000.0 + 3300)
    assert creds.is_expiring(0, now=1000.0 + 3600)
    assert creds.can_refresh
