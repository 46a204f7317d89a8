"""
Pending redirect-flow request (state, nonce, scopes, PKCE verifier) in tab-scoped storage.
Written before the page navigates away, consumed by the callback handler on the next load.
"""
import json
import logging
import time
from dataclasses import asdict, dataclass

from identity_client.storage import KeyValueStorage

logger = logging.getLogger(__name__)

# TTL seconds for a pending flow (allow 10 min for the user at the provider)
FLOW_TTL = 600


@dataclass
class PendingFlow:
    state: str
    nonce: str
    scopes: list[str]
    code_verifier: str | None
    created_at: float

    def expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return (now - self.created_at) > FLOW_TTL


class FlowStore:
    def __init__(self, storage: KeyValueStorage, prefix: str = "idc."):
        self._storage = storage
        self._key = f"{prefix}auth.request"

    def store_flow(
        self,
        state: str,
        nonce: str,
        scopes: list[str],
        code_verifier: str | None = None,
        now: float | None = None,
    ) -> PendingFlow:
        flow = PendingFlow(
            state=state,
            nonce=nonce,
            scopes=list(scopes),
            code_verifier=code_verifier,
            created_at=time.time() if now is None else now,
        )
        self._storage.set(self._key, json.dumps(asdict(flow)))
        return flow

    def peek(self) -> PendingFlow | None:
        raw = self._storage.get(self._key)
        if raw is None:
            return None
        try:
            return PendingFlow(**json.loads(raw))
        except (ValueError, TypeError):
            logger.warning("Discarding unreadable pending flow record")
            self.clear()
            return None

    def pop_flow(self, now: float | None = None) -> PendingFlow | None:
        """Read and remove the pending flow; expired flows count as absent."""
        flow = self.peek()
        self.clear()
        if flow is None or flow.expired(now):
            return None
        return flow

    def clear(self) -> None:
        self._storage.delete(self._key)
