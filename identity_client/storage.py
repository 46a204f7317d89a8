"""
Key-value persistence surfaces: tab-scoped memory storage and durable SQL storage.
Both notify change listeners after every mutation, which the storage-event broadcast fallback relies on.
"""
import logging
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from identity_client.config import ClientConfig
from identity_client.database import StorageEntry, create_storage_engine, make_session_factory

logger = logging.getLogger(__name__)

# (key, new_value); new_value is None for deletes
ChangeListener = Callable[[str, str | None], None]


class StorageUnavailableError(Exception):
    """The persistence surface cannot be used (restricted environment, database down)."""


class KeyValueStorage:
    """String key -> string value storage with change notification."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, key: str, value: str | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                logger.exception("Storage change listener failed for key %s", key)


class MemoryStorage(KeyValueStorage):
    """Dict-backed storage. Share one instance between contexts to model a per-origin store."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._notify(key, value)

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._notify(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]


class SqlStorage(KeyValueStorage):
    """Durable storage on SQLAlchemy. Change listeners fire for writes made through this instance."""

    def __init__(self, database_url: str):
        super().__init__()
        try:
            self._engine = create_storage_engine(database_url)
        except SQLAlchemyError as e:
            raise StorageUnavailableError(f"Cannot open storage at {database_url}: {e}") from e
        self._session_factory = make_session_factory(self._engine)

    def get(self, key: str) -> str | None:
        try:
            with self._session_factory() as db:
                row = db.get(StorageEntry, key)
                return row.value if row is not None else None
        except SQLAlchemyError as e:
            raise StorageUnavailableError(str(e)) from e

    def set(self, key: str, value: str) -> None:
        try:
            with self._session_factory() as db:
                row = db.get(StorageEntry, key)
                if row is None:
                    db.add(StorageEntry(key=key, value=value))
                else:
                    row.value = value
                db.commit()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(str(e)) from e
        self._notify(key, value)

    def delete(self, key: str) -> None:
        try:
            with self._session_factory() as db:
                row = db.get(StorageEntry, key)
                if row is None:
                    return
                db.delete(row)
                db.commit()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(str(e)) from e
        self._notify(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        try:
            with self._session_factory() as db:
                stmt = select(StorageEntry.key)
                if prefix:
                    stmt = stmt.where(StorageEntry.key.startswith(prefix, autoescape=True))
                return list(db.scalars(stmt))
        except SQLAlchemyError as e:
            raise StorageUnavailableError(str(e)) from e

    def dispose(self) -> None:
        self._engine.dispose()


def build_storage(config: ClientConfig) -> KeyValueStorage | None:
    """Storage for the configured cache location; None means memory-only caching."""
    if config.cache_location == "memory":
        return None
    if config.cache_location == "durable":
        try:
            return SqlStorage(config.database_url)
        except StorageUnavailableError as e:
            logger.warning("Durable storage unavailable, caching in memory only: %s", e)
            return None
    return MemoryStorage()
