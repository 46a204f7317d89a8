"""
Interactive acquisition strategies: popup polling and full-page redirect.
Both produce the provider's callback parameters; the refresh coordinator turns them into credentials.
"""
import asyncio
import logging
import webbrowser
from urllib.parse import parse_qsl, urlsplit

from identity_client.errors import AuthError, AuthErrorKind
from identity_client.flow_store import FlowStore, PendingFlow

logger = logging.getLogger(__name__)

# Keys that mark an address as an authorization callback
CALLBACK_KEYS = ("state", "code", "access_token", "id_token", "error")


class CrossOriginError(Exception):
    """Reading a popup's location while it is on another origin."""


class PopupWindow:
    """Secondary browsing surface opened on the provider's authorization endpoint."""

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    @property
    def location(self) -> str:
        """Current address; raises CrossOriginError until the popup is back on our origin."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class WindowOpener:
    def open(self, url: str) -> PopupWindow | None:
        """Open a popup on url; None when the environment blocks it."""
        raise NotImplementedError


class Navigator:
    def assign(self, url: str) -> None:
        """Navigate the whole context away to url."""
        raise NotImplementedError


class RecordingNavigator(Navigator):
    """Holds the last navigation target for a host that answers with an HTTP redirect."""

    def __init__(self) -> None:
        self.location: str | None = None

    def assign(self, url: str) -> None:
        self.location = url

    def pop(self) -> str | None:
        url, self.location = self.location, None
        return url


def parse_callback(url: str) -> dict[str, str]:
    """Callback parameters from the fragment, falling back to the query string."""
    parts = urlsplit(url)
    params = dict(parse_qsl(parts.fragment))
    if not any(k in params for k in CALLBACK_KEYS):
        params = dict(parse_qsl(parts.query))
    return params


def is_callback(params: dict[str, str]) -> bool:
    return any(k in params for k in CALLBACK_KEYS)


def raise_for_callback_error(params: dict[str, str]) -> None:
    error = params.get("error")
    if error:
        raise AuthError(
            AuthErrorKind.PROVIDER_ERROR,
            params.get("error_description") or "Authentication failed",
            error_code=error,
        )


class PopupFlow:
    def __init__(self, opener: WindowOpener, redirect_uri: str, timeout: float = 120.0, poll_interval: float = 0.1):
        self._opener = opener
        self._redirect_uri = redirect_uri
        self._timeout = timeout
        self._poll_interval = poll_interval

    async def run(self, authorize_url: str, state: str) -> dict[str, str]:
        """
        Open the popup and poll until it returns to the redirect address.
        Raises popup_blocked, popup_closed or popup_timeout; the popup is always closed on exit.
        """
        popup = self._opener.open(authorize_url)
        if popup is None:
            raise AuthError(AuthErrorKind.POPUP_BLOCKED, "Popup window was blocked")
        try:
            href = await asyncio.wait_for(self._poll(popup), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise AuthError(AuthErrorKind.POPUP_TIMEOUT, "Authentication timed out") from None
        finally:
            popup.close()

        params = parse_callback(href)
        raise_for_callback_error(params)
        if params.get("state") != state:
            raise AuthError(AuthErrorKind.STATE_MISMATCH, "State parameter does not match")
        return params

    async def _poll(self, popup: PopupWindow) -> str:
        while True:
            if popup.closed:
                raise AuthError(AuthErrorKind.POPUP_CLOSED, "Popup was closed before authentication completed")
            try:
                href = popup.location
            except CrossOriginError:
                # Still on the provider's origin
                href = None
            if href and href.startswith(self._redirect_uri):
                return href
            await asyncio.sleep(self._poll_interval)


class RedirectFlow:
    def __init__(self, flows: FlowStore, navigator: Navigator):
        self._flows = flows
        self._navigator = navigator

    def start(
        self,
        authorize_url: str,
        *,
        state: str,
        nonce: str,
        scopes: list[str],
        code_verifier: str | None = None,
    ) -> None:
        """Persist the correlation values, then navigate away. Completion happens in complete()."""
        self._flows.store_flow(state, nonce=nonce, scopes=scopes, code_verifier=code_verifier)
        logger.info("Navigating to provider for redirect login")
        self._navigator.assign(authorize_url)

    def complete(self, callback_url: str) -> tuple[PendingFlow, dict[str, str]] | None:
        """
        Validate a callback against the pending request. None when callback_url is not a callback.
        The pending request is consumed whatever the outcome, so a callback cannot be replayed.
        """
        params = parse_callback(callback_url)
        if not is_callback(params):
            return None
        flow = self._flows.pop_flow()
        raise_for_callback_error(params)
        if flow is None:
            raise AuthError(AuthErrorKind.STATE_MISMATCH, "No pending login request (missing or expired)")
        if params.get("state") != flow.state:
            raise AuthError(AuthErrorKind.STATE_MISMATCH, "State parameter does not match")
        return flow, params


class CallbackInbox:
    """Callback addresses delivered by the host's /callback route, keyed by state."""

    def __init__(self) -> None:
        self._expected: set[str] = set()
        self._delivered: dict[str, str] = {}

    def expect(self, state: str) -> None:
        self._expected.add(state)

    def expects(self, state: str | None) -> bool:
        return state is not None and state in self._expected

    def deliver(self, state: str, url: str) -> None:
        if state in self._expected:
            self._delivered[state] = url

    def peek(self, state: str) -> str | None:
        return self._delivered.get(state)

    def discard(self, state: str) -> None:
        self._expected.discard(state)
        self._delivered.pop(state, None)


class BrowserPopup(PopupWindow):
    def __init__(self, inbox: CallbackInbox, state: str):
        self._inbox = inbox
        self._state = state
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def location(self) -> str:
        url = self._inbox.peek(self._state)
        if url is None:
            raise CrossOriginError("Popup is on the provider's origin")
        return url

    def close(self) -> None:
        self._closed = True
        self._inbox.discard(self._state)


class SystemBrowserOpener(WindowOpener):
    """Opens the provider in the system browser; the host's /callback route reports the return address."""

    def __init__(self, inbox: CallbackInbox):
        self._inbox = inbox

    def open(self, url: str) -> PopupWindow | None:
        state = dict(parse_qsl(urlsplit(url).query)).get("state")
        if not state:
            return None
        self._inbox.expect(state)
        if not webbrowser.open(url, new=1):
            self._inbox.discard(state)
            return None
        return BrowserPopup(self._inbox, state)
