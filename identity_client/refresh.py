"""
Refresh coordinator: silent acquisition, deduplicated refresh, background refresh scheduling.
The only component that talks to the provider's token endpoint (refresh and authorization-code grants).
"""
import asyncio
import logging
import time
from collections.abc import Callable

import httpx

from identity_client.config import ClientConfig
from identity_client.credential_store import CredentialStore, make_entry
from identity_client.errors import AuthError, AuthErrorKind, classify_token_error
from identity_client.flow_store import FlowStore
from identity_client.interactive import (
    Navigator,
    PopupFlow,
    RedirectFlow,
    WindowOpener,
)
from identity_client.models import (
    CredentialSet,
    RefreshResult,
    TokenRequest,
    cache_key,
    unverified_claims,
)
from identity_client.pkce import build_authorize_url, generate_nonce, generate_pkce, generate_state
from identity_client.storage import KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)


class RefreshCoordinator:
    """
    Per cache key: Idle -> Refreshing -> Idle. Callers asking for a key that is already
    refreshing share the in-flight exchange instead of issuing their own.
    """

    def __init__(
        self,
        config: ClientConfig,
        store: CredentialStore,
        *,
        http_client: httpx.AsyncClient | None = None,
        opener: WindowOpener | None = None,
        navigator: Navigator | None = None,
        tab_storage: KeyValueStorage | None = None,
        on_token_refresh: Callable[[CredentialSet, list[str], str | None], None] | None = None,
        on_refresh_failed: Callable[[AuthError], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._store = store
        self._http = http_client
        self._owns_http = http_client is None
        self._opener = opener
        self._navigator = navigator
        self._flows = FlowStore(tab_storage or MemoryStorage(), prefix=config.storage_prefix)
        self.on_token_refresh = on_token_refresh
        self.on_refresh_failed = on_refresh_failed
        self._clock = clock

        self._in_flight: dict[str, asyncio.Task] = {}
        self._refresh_timer: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task] = set()
        self._current_account: str | None = None

    # --- cache ---

    @property
    def current_account_id(self) -> str | None:
        return self._current_account

    @current_account_id.setter
    def current_account_id(self, account: str | None) -> None:
        self._current_account = account

    def _scopes(self, request: TokenRequest | None) -> list[str]:
        if request is not None and request.scopes:
            return list(request.scopes)
        return list(self._config.scopes)

    def key_for(self, request: TokenRequest | None = None) -> str:
        account = request.account if request is not None and request.account else self._current_account
        return cache_key(account, self._scopes(request))

    def get_cached(self, request: TokenRequest | None = None) -> CredentialSet | None:
        entry = self._store.get(self.key_for(request))
        return entry.credentials if entry is not None else None

    def store_credentials(
        self,
        credentials: CredentialSet,
        scopes: list[str],
        account: str | None = None,
        persist: bool = True,
    ) -> str:
        """Cache an acquisition result, make its account current and re-arm the background refresh."""
        account = account or credentials.account_id or self._current_account
        key = cache_key(account, scopes)
        self._store.put(key, make_entry(credentials, scopes, account, now=self._clock()), persist=persist)
        self._current_account = account
        self.schedule_background_refresh(credentials, TokenRequest(scopes=list(scopes), account=account))
        return key

    def adopt(self, credentials: CredentialSet, scopes: list[str] | None = None, account: str | None = None) -> None:
        """
        Apply credentials refreshed by a sibling context: memory only, no store read, no exchange.
        scopes and account are the sibling's cache coordinates, not what the provider echoed.
        """
        scopes = scopes or credentials.granted_scopes or list(self._config.scopes)
        self.store_credentials(credentials, scopes, account, persist=False)
        logger.debug("Adopted credentials refreshed by another context")

    def clear_cache(self) -> None:
        self.cancel_background_refresh()
        self._store.clear()
        self._current_account = None

    # --- silent acquisition ---

    async def acquire_silent(self, request: TokenRequest) -> CredentialSet | None:
        """
        Cached credentials when outside the refresh buffer, else a (deduplicated) refresh.
        None means interaction is required. Network and configuration failures raise AuthError.
        """
        key = self.key_for(request)
        entry = self._store.get(key)
        if entry is None:
            return None
        credentials = entry.credentials
        if not request.force_refresh and not credentials.is_expiring(self._config.refresh_buffer, self._clock()):
            logger.debug("Returning cached credentials for %s", key)
            return credentials
        if not credentials.refresh_credential:
            logger.debug("Cached credentials for %s expiring and not renewable", key)
            return None

        result = await self.refresh(credentials.refresh_credential, request)
        if result.success:
            return result.credentials
        if result.requires_interaction:
            return None
        raise result.error

    async def refresh(self, refresh_credential: str, request: TokenRequest | None = None) -> RefreshResult:
        """Refresh for request's cache key; concurrent calls for the same key share one exchange."""
        request = request or TokenRequest(scopes=list(self._config.scopes))
        key = self.key_for(request)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._perform_refresh(refresh_credential, request))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, key=key: self._settle(key, t))
        else:
            logger.debug("Joining in-flight refresh for %s", key)
        # A cancelled caller must not cancel the exchange other callers are awaiting
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _perform_refresh(self, refresh_credential: str, request: TokenRequest) -> RefreshResult:
        if not self._config.authority or not self._config.client_id:
            error = AuthError(AuthErrorKind.CONFIG_ERROR, "No authority or client configured")
            self._report_failure(error)
            return RefreshResult(success=False, error=error)

        scopes = self._scopes(request)
        try:
            data = await self._post_token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_credential,
                    "client_id": self._config.client_id,
                    "scope": " ".join(scopes),
                }
            )
        except AuthError as error:
            logger.warning("Token refresh failed: %s", error.kind.value)
            if error.kind == AuthErrorKind.CREDENTIAL_REJECTED:
                # Never retry a credential the provider rejected
                self.cancel_background_refresh()
                self._store.evict(self.key_for(request))
            self._report_failure(error)
            return RefreshResult(success=False, error=error, requires_interaction=error.requires_interaction)

        credentials = CredentialSet.from_token_response(
            data, fallback_scopes=scopes, previous_refresh=refresh_credential, now=self._clock()
        )
        self.store_credentials(credentials, scopes, request.account or self._current_account)
        logger.info("Token refreshed; expires in %ds", int(credentials.expires_at - self._clock()))
        if self.on_token_refresh is not None:
            self.on_token_refresh(credentials, list(scopes), self._current_account)
        return RefreshResult(success=True, credentials=credentials)

    def _report_failure(self, error: AuthError) -> None:
        if self.on_refresh_failed is not None:
            self.on_refresh_failed(error)

    async def _post_token(self, form: dict) -> dict:
        """POST to the token endpoint; every failure is classified into an AuthError here."""
        if self._http is None:
            self._http = httpx.AsyncClient()
        try:
            r = await self._http.post(
                self._config.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self._config.request_timeout,
            )
        except httpx.HTTPError as e:
            raise AuthError(AuthErrorKind.NETWORK_ERROR, f"Network error during token request: {e}") from e

        if r.status_code != 200:
            try:
                body = r.json()
            except ValueError:
                body = {}
            raise classify_token_error(r.status_code, body if isinstance(body, dict) else {})

        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError(AuthErrorKind.TOKEN_PARSE_ERROR, "Token response has no access_token")
        return data

    async def exchange_code(self, code: str, code_verifier: str | None, scopes: list[str]) -> CredentialSet:
        """Authorization-code grant (PKCE) for a callback that carried a code."""
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_uri,
            "client_id": self._config.client_id,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        data = await self._post_token(form)
        return CredentialSet.from_token_response(data, fallback_scopes=scopes, now=self._clock())

    # --- background refresh ---

    @property
    def background_refresh_scheduled(self) -> bool:
        return self._refresh_timer is not None

    def schedule_background_refresh(
        self, credentials: CredentialSet, request: TokenRequest | None = None
    ) -> asyncio.TimerHandle | None:
        """
        Arm exactly one timer at expires_at - refresh_buffer, replacing any previous one.
        Each fire makes a single attempt; the next timer is armed only by a successful renewal.
        """
        self.cancel_background_refresh()
        if not self._config.auto_refresh or not credentials.refresh_credential:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; background refresh not scheduled")
            return None
        delay = max(0.0, credentials.expires_at - self._config.refresh_buffer - self._clock())
        request = request or TokenRequest(scopes=list(credentials.granted_scopes or self._config.scopes))
        logger.debug("Scheduling token refresh in %.0fs", delay)
        self._refresh_timer = loop.call_later(delay, self._on_refresh_timer, request)
        return self._refresh_timer

    def cancel_background_refresh(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None

    def _on_refresh_timer(self, request: TokenRequest) -> None:
        self._refresh_timer = None
        task = asyncio.ensure_future(self._background_refresh(request))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_refresh(self, request: TokenRequest) -> None:
        entry = self._store.get(self.key_for(request))
        if entry is None or not entry.credentials.refresh_credential:
            logger.debug("Background refresh skipped: no stored refresh credential")
            return
        logger.debug("Auto-refreshing token")
        try:
            result = await self.refresh(entry.credentials.refresh_credential, request)
        except Exception as e:
            # The timer loop must survive; failures go to the callback, never to caller code
            logger.exception("Background refresh crashed")
            self._report_failure(AuthError(AuthErrorKind.NETWORK_ERROR, f"Background refresh crashed: {e}"))
            return
        if not result.success:
            logger.warning("Background refresh failed: %s", result.error.kind.value)

    # --- interactive acquisition ---

    def _interactive_request(self, request: TokenRequest) -> tuple[str, str, str, str | None]:
        if not self._config.authority or not self._config.client_id:
            raise AuthError(AuthErrorKind.CONFIG_ERROR, "No authority or client configured")
        state = generate_state()
        nonce = generate_nonce()
        code_verifier, code_challenge = (None, None)
        if "code" in self._config.response_type.split():
            code_verifier, code_challenge = generate_pkce()
        url = build_authorize_url(
            authorize_endpoint=self._config.authorize_endpoint,
            client_id=self._config.client_id,
            redirect_uri=self._config.redirect_uri,
            scopes=self._scopes(request),
            state=state,
            nonce=nonce,
            response_type=self._config.response_type,
            code_challenge=code_challenge,
            prompt=request.prompt,
            login_hint=request.login_hint,
            domain_hint=request.domain_hint,
            extra_params=request.extra_query_parameters,
        )
        return url, state, nonce, code_verifier

    async def acquire_interactive(self, request: TokenRequest, use_popup: bool = False) -> CredentialSet | None:
        """
        Popup: returns credentials or raises popup_blocked/popup_closed/popup_timeout.
        Redirect: navigates away and returns None; see handle_redirect_response.
        """
        url, state, nonce, code_verifier = self._interactive_request(request)
        scopes = self._scopes(request)
        if use_popup:
            if self._opener is None:
                raise AuthError(AuthErrorKind.POPUP_BLOCKED, "No window opener available")
            flow = PopupFlow(
                self._opener,
                self._config.redirect_uri,
                timeout=self._config.popup_timeout,
                poll_interval=self._config.popup_poll_interval,
            )
            params = await flow.run(url, state)
            return await self._finish_interactive(params, scopes, nonce, code_verifier, request.account)

        if self._navigator is None:
            raise AuthError(AuthErrorKind.CONFIG_ERROR, "No navigator available for redirect login")
        RedirectFlow(self._flows, self._navigator).start(
            url, state=state, nonce=nonce, scopes=scopes, code_verifier=code_verifier
        )
        return None

    async def handle_redirect_response(self, callback_url: str) -> CredentialSet | None:
        """Entry point on (re)load after a redirect login. None when callback_url is not a callback."""
        completed = RedirectFlow(self._flows, self._navigator or Navigator()).complete(callback_url)
        if completed is None:
            return None
        flow, params = completed
        return await self._finish_interactive(params, flow.scopes, flow.nonce, flow.code_verifier, None)

    async def _finish_interactive(
        self,
        params: dict[str, str],
        scopes: list[str],
        nonce: str,
        code_verifier: str | None,
        account: str | None,
    ) -> CredentialSet:
        if params.get("access_token"):
            credentials = CredentialSet.from_token_response(params, fallback_scopes=scopes, now=self._clock())
        elif params.get("code"):
            credentials = await self.exchange_code(params["code"], code_verifier, scopes)
        else:
            raise AuthError(AuthErrorKind.TOKEN_PARSE_ERROR, "Callback carried no credentials or code")

        token_nonce = unverified_claims(credentials.id_credential).get("nonce")
        if token_nonce is not None and token_nonce != nonce:
            raise AuthError(AuthErrorKind.STATE_MISMATCH, "ID token nonce does not match")

        self.store_credentials(credentials, scopes, account)
        logger.info("Interactive login completed")
        return credentials

    # --- lifecycle ---

    async def dispose(self) -> None:
        self.cancel_background_refresh()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self._in_flight.clear()
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
