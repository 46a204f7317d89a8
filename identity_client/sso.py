"""
Cross-context SSO session: one persisted Session record shared by every context of an origin,
kept coherent by broadcasts, extended by activity and ended by inactivity or validity sweeps.

Broadcast trust, per message type:
  created / updated      advisory; re-read the persisted record and adopt it if the id matches
  ended / expired        clear local state if the id matches
  credential_refreshed   trusted; the carried credentials are applied directly
  activity_ping          advisory; only the local last_activity watermark moves
"""
import asyncio
import json
import logging
import secrets
import time
from collections.abc import Callable

from identity_client.broadcast import BroadcastBus, LocalBroadcastHub, MessageHandler, open_bus
from identity_client.config import SSOConfig
from identity_client.models import BroadcastMessage, CredentialSet, MessageType, Session
from identity_client.storage import KeyValueStorage, MemoryStorage, StorageUnavailableError

logger = logging.getLogger(__name__)


class SessionSynchronizer:
    def __init__(
        self,
        config: SSOConfig,
        storage: KeyValueStorage | None = None,
        *,
        bus: BroadcastBus | None = None,
        hub: LocalBroadcastHub | None = None,
        origin_domain: str = "",
        context_id: str | None = None,
        on_session_change: Callable[[Session | None], None] | None = None,
        on_credentials_synced: Callable[[CredentialSet, list[str] | None, str | None], None] | None = None,
        on_session_expired: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._storage = storage if storage is not None else MemoryStorage()
        self._session_key = f"{config.storage_prefix}session"
        self.origin_domain = origin_domain
        self.context_id = context_id or secrets.token_hex(8)
        self.on_session_change = on_session_change
        self.on_credentials_synced = on_credentials_synced
        self.on_session_expired = on_session_expired
        self._clock = clock

        self._current: Session | None = None
        self._handlers: list[MessageHandler] = []
        self._last_signal: float | None = None
        self._sweeps: list[asyncio.Task] = []

        self._bus = None
        self._unsubscribe = None
        if config.cross_context_sync:
            self._bus = bus or open_bus(hub, self._storage, self.context_id, config.storage_prefix)
            if self._bus is not None:
                self._unsubscribe = self._bus.subscribe(self._handle_message)

    # --- session lifecycle ---

    @property
    def current_session(self) -> Session | None:
        return self._current

    def has_active_session(self) -> bool:
        return self._current is not None and self.is_session_valid(self._current)

    def is_session_valid(self, session: Session) -> bool:
        if not session.is_valid:
            return False
        if self._clock() >= session.expires_at:
            return False
        allowed = self._config.allowed_domains
        if allowed and session.origin_domain not in allowed:
            return False
        return True

    def start_session(self, principal: str, metadata: dict | None = None) -> Session:
        now = self._clock()
        session = Session(
            session_id=secrets.token_hex(16),
            principal=principal,
            created_at=now,
            last_activity=now,
            expires_at=now + self._config.session_timeout,
            origin_domain=self.origin_domain,
            metadata=dict(metadata or {}),
        )
        self._current = session
        self._last_signal = None
        self._persist(session)
        logger.info("SSO session started: %s", session.session_id)
        self._broadcast(MessageType.CREATED, session.session_id, {"principal": principal})
        self._emit_change(session)
        return session

    def end_session(self) -> None:
        """User-initiated termination: clear the record, broadcast ended, notify with None."""
        self._terminate(MessageType.ENDED)

    def detect_session(self) -> Session | None:
        """Restore the persisted session on load. An invalid one is cleaned up and reported expired."""
        session = self._load()
        if session is None:
            logger.debug("No existing SSO session found")
            return None
        if not self.is_session_valid(session):
            logger.info("Found expired SSO session %s, cleaning up", session.session_id)
            self._clear_session_data()
            self._emit_expired()
            return None
        self._current = session
        self._last_signal = None
        logger.info("Restored SSO session: %s", session.session_id)
        self._emit_change(session)
        return session

    def _terminate(self, kind: MessageType) -> bool:
        if self._current is None:
            return False
        session_id = self._current.session_id
        self._clear_session_data()
        self._current = None
        logger.info("SSO session %s: %s", kind.value, session_id)
        self._broadcast(kind, session_id)
        self._emit_change(None)
        return True

    def _expire(self) -> None:
        if self._terminate(MessageType.EXPIRED):
            self._emit_expired()

    # --- activity ---

    def record_activity(self) -> bool:
        """Move last_activity to now, extend when configured, persist and ping siblings."""
        if self._current is None:
            return False
        # A sibling may have extended the persisted session since our last sweep
        session = self._reconcile()
        if session is None:
            return False
        now = self._clock()
        if now >= session.expires_at:
            self._expire()
            return False
        session.last_activity = now
        if self._config.auto_extend_session:
            session.expires_at = now + self._config.session_timeout
        self._last_signal = now
        self._persist(session)
        self._broadcast(MessageType.ACTIVITY_PING, session.session_id)
        return True

    def notify_interaction(self) -> bool:
        """Raw interaction signal; at most one record_activity per activity_debounce window."""
        if not self._config.track_activity or self._current is None:
            return False
        now = self._clock()
        if self._last_signal is not None and now - self._last_signal < self._config.activity_debounce:
            return False
        return self.record_activity()

    # --- credentials ---

    def sync_credentials(
        self, credentials: CredentialSet, scopes: list[str] | None = None, account: str | None = None
    ) -> bool:
        """
        Hand freshly refreshed credentials to siblings so they skip their own refresh.
        scopes and account are the cache coordinates the credentials were stored under.
        """
        if self._current is None:
            return False
        self._broadcast(
            MessageType.CREDENTIAL_REFRESHED,
            self._current.session_id,
            {"credentials": credentials.to_dict(), "scopes": scopes, "account": account},
        )
        return True

    # --- broadcast ---

    def on_event(self, handler: MessageHandler) -> Callable[[], None]:
        """Subscribe to messages received from sibling contexts."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _broadcast(self, kind: MessageType, session_id: str, payload: dict | None = None) -> None:
        if self._bus is None:
            return
        self._bus.post(BroadcastMessage(type=kind, session_id=session_id, timestamp=self._clock(), payload=payload))

    def _handle_message(self, message: BroadcastMessage) -> None:
        logger.debug("Received broadcast: %s", message.type.value)
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception:
                logger.exception("SSO event handler failed")

        current = self._current
        matches = current is not None and current.session_id == message.session_id

        if message.type in (MessageType.CREATED, MessageType.UPDATED):
            session = self._load()
            if session is not None and session.session_id == message.session_id:
                self._current = session
                self._emit_change(session)
        elif message.type in (MessageType.ENDED, MessageType.EXPIRED):
            if matches:
                # The sender already cleared the shared record
                self._current = None
                self._emit_change(None)
                if message.type == MessageType.EXPIRED:
                    self._emit_expired()
        elif message.type == MessageType.CREDENTIAL_REFRESHED:
            self._apply_credentials(message.payload)
        elif message.type == MessageType.ACTIVITY_PING:
            if matches and message.timestamp >= current.expires_at:
                # Our copy is stale; the sender persisted its extension before pinging
                current = self._reconcile()
            if current is not None and current.session_id == message.session_id:
                current.last_activity = max(current.last_activity, message.timestamp)

    def _apply_credentials(self, payload: dict | None) -> None:
        payload = payload or {}
        data = payload.get("credentials")
        if not data:
            return
        try:
            credentials = CredentialSet.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed credential_refreshed payload")
            return
        scopes = payload.get("scopes")
        if not isinstance(scopes, list):
            scopes = None
        if self.on_credentials_synced is not None:
            self.on_credentials_synced(credentials, scopes, payload.get("account"))

    # --- sweeps ---

    def check_inactivity(self) -> bool:
        """End the session when idle longer than session_timeout. True when it expired the session."""
        if self._current is None or not self._config.track_activity:
            return False
        session = self._reconcile()
        if session is None:
            return False
        if self._clock() - session.last_activity > self._config.session_timeout:
            logger.info("SSO session expired due to inactivity")
            self._expire()
            return True
        return False

    def check_validity(self) -> bool:
        """Re-check absolute expiry and domain against the persisted record. True when it expired the session."""
        if self._current is None:
            return False
        session = self._reconcile()
        if session is None:
            return False
        if not self.is_session_valid(session):
            logger.info("SSO session expired during validity check")
            self._expire()
            return True
        return False

    def _reconcile(self) -> Session | None:
        """Merge a sibling's newer persisted write into the local session; drop it if the record is gone."""
        current = self._current
        persisted = self._load()
        if persisted is None:
            logger.info("SSO session %s no longer persisted; dropping local state", current.session_id)
            self._current = None
            self._emit_change(None)
            return None
        if persisted.session_id == current.session_id:
            persisted.last_activity = max(persisted.last_activity, current.last_activity)
            self._current = persisted
        return self._current

    def start(self) -> None:
        """Arm the periodic sweeps on the running loop."""
        if self._sweeps:
            return
        if self._config.track_activity:
            self._sweeps.append(
                asyncio.ensure_future(self._sweep(self._config.activity_check_interval, self.check_inactivity))
            )
        self._sweeps.append(
            asyncio.ensure_future(self._sweep(self._config.session_check_interval, self.check_validity))
        )

    async def _sweep(self, interval: float, check: Callable[[], bool]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                check()
            except Exception:
                logger.exception("SSO sweep failed")

    def dispose(self) -> None:
        for task in self._sweeps:
            task.cancel()
        self._sweeps.clear()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._bus is not None:
            self._bus.close()
            self._bus = None
        self._handlers.clear()

    # --- persistence ---

    def _persist(self, session: Session) -> None:
        try:
            self._storage.set(self._session_key, json.dumps(session.to_dict()))
        except StorageUnavailableError as e:
            logger.warning("Could not persist SSO session: %s", e)

    def _load(self) -> Session | None:
        try:
            raw = self._storage.get(self._session_key)
        except StorageUnavailableError as e:
            logger.warning("Could not read SSO session: %s", e)
            return None
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable SSO session record")
            return None

    def _clear_session_data(self) -> None:
        try:
            for key in self._storage.keys(self._config.storage_prefix):
                self._storage.delete(key)
        except StorageUnavailableError as e:
            logger.warning("Could not clear SSO session data: %s", e)

    def _emit_change(self, session: Session | None) -> None:
        if self.on_session_change is not None:
            self.on_session_change(session)

    def _emit_expired(self) -> None:
        if self.on_session_expired is not None:
            self.on_session_expired()
