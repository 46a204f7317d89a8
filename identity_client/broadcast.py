"""
Best-effort message bus between sibling contexts of one origin.
LocalBroadcastHub channels are the primary transport; StorageEventBus emulates one on a shared
storage's change notifications when no hub is available.
"""
import json
import logging
from collections.abc import Callable

from identity_client.models import BroadcastMessage
from identity_client.storage import KeyValueStorage, StorageUnavailableError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BroadcastMessage], None]

SYNC_CHANNEL = "idc_sso_sync"


class BroadcastBus:
    """post() reaches every other member of the bus, never the poster itself."""

    def __init__(self) -> None:
        self._handlers: list[MessageHandler] = []
        self.closed = False

    def post(self, message: BroadcastMessage) -> None:
        raise NotImplementedError

    def subscribe(self, handler: MessageHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def close(self) -> None:
        self.closed = True
        self._handlers.clear()

    def _deliver(self, message: BroadcastMessage) -> None:
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception:
                logger.exception("Broadcast handler failed for %s", message.type.value)


class LocalBroadcastHub:
    """Named channels shared by every context running in this process."""

    def __init__(self) -> None:
        self._members: dict[str, list["HubChannel"]] = {}

    def channel(self, name: str = SYNC_CHANNEL) -> "HubChannel":
        member = HubChannel(self, name)
        self._members.setdefault(name, []).append(member)
        return member

    def _publish(self, sender: "HubChannel", message: BroadcastMessage) -> None:
        # Receivers get their own copy, as with a structured clone
        data = message.to_dict()
        for member in list(self._members.get(sender.name, [])):
            if member is not sender and not member.closed:
                member._deliver(BroadcastMessage.from_dict(json.loads(json.dumps(data))))

    def _leave(self, member: "HubChannel") -> None:
        members = self._members.get(member.name, [])
        if member in members:
            members.remove(member)


class HubChannel(BroadcastBus):
    def __init__(self, hub: LocalBroadcastHub, name: str):
        super().__init__()
        self._hub = hub
        self.name = name

    def post(self, message: BroadcastMessage) -> None:
        if self.closed:
            return
        self._hub._publish(self, message)

    def close(self) -> None:
        super().close()
        self._hub._leave(self)


class StorageEventBus(BroadcastBus):
    """
    Writes the message under key and deletes it straight away; siblings see the write through
    their change listener. Each message carries the poster's context_id so it can skip its own.
    """

    def __init__(self, storage: KeyValueStorage, key: str, context_id: str):
        super().__init__()
        self._storage = storage
        self._key = key
        self._context_id = context_id
        self._remove_listener = storage.add_listener(self._on_change)

    def post(self, message: BroadcastMessage) -> None:
        if self.closed:
            return
        data = {**message.to_dict(), "context_id": self._context_id}
        try:
            self._storage.set(self._key, json.dumps(data))
            self._storage.delete(self._key)
        except StorageUnavailableError as e:
            logger.warning("Storage-event broadcast failed: %s", e)

    def _on_change(self, key: str, value: str | None) -> None:
        if key != self._key or value is None:
            return
        try:
            data = json.loads(value)
            if data.get("context_id") == self._context_id:
                return
            message = BroadcastMessage.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.debug("Ignoring malformed storage-event message")
            return
        self._deliver(message)

    def close(self) -> None:
        super().close()
        self._remove_listener()


def open_bus(
    hub: LocalBroadcastHub | None,
    storage: KeyValueStorage | None,
    context_id: str,
    prefix: str = "idc.sso.",
) -> BroadcastBus | None:
    """Hub channel when a hub is available, else the storage-event fallback; None when neither is."""
    if hub is not None:
        return hub.channel(SYNC_CHANNEL)
    if storage is not None:
        logger.debug("No broadcast hub, using storage events")
        return StorageEventBus(storage, f"{prefix}broadcast", context_id)
    logger.warning("No broadcast transport available; cross-context sync disabled")
    return None
