"""
IdentityClient: the consumer-facing surface. Wires the credential store, refresh coordinator,
interactive flows and SSO synchronizer for one context.
"""
import dataclasses
import logging
import time
import uuid
from collections.abc import Callable
from urllib.parse import urlsplit

import httpx

from identity_client.broadcast import BroadcastBus, LocalBroadcastHub
from identity_client.config import ClientConfig
from identity_client.credential_store import CredentialStore
from identity_client.crypto import KeyProvider
from identity_client.errors import AuthError, AuthErrorKind
from identity_client.interactive import Navigator, WindowOpener
from identity_client.models import AuthEvent, CredentialSet, Session, TokenRequest, UserProfile
from identity_client.pkce import build_logout_url
from identity_client.profile import ProfileProvider, profile_from_claims
from identity_client.refresh import RefreshCoordinator
from identity_client.sso import SessionSynchronizer
from identity_client.storage import KeyValueStorage, MemoryStorage, SqlStorage, build_storage

logger = logging.getLogger(__name__)

AuthEventHandler = Callable[[AuthEvent], None]
SessionChangeHandler = Callable[[Session | None], None]

_UNSET = object()


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class IdentityClient:
    """
    One instance per context (tab). Contexts of the same origin share `shared_storage` and a
    LocalBroadcastHub; each keeps its own tab-scoped storage for pending redirect requests.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        storage: KeyValueStorage | None | object = _UNSET,
        shared_storage: KeyValueStorage | None = None,
        tab_storage: KeyValueStorage | None = None,
        hub: LocalBroadcastHub | None = None,
        bus: BroadcastBus | None = None,
        key_provider: KeyProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        opener: WindowOpener | None = None,
        navigator: Navigator | None = None,
        profile_provider: ProfileProvider | None = None,
        origin_domain: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._owns_storage = storage is _UNSET
        self._storage = build_storage(config) if storage is _UNSET else storage
        self.navigator = navigator
        self._profile_provider = profile_provider
        self._profile: UserProfile | None = None
        self._event_handlers: list[AuthEventHandler] = []
        self._session_handlers: list[SessionChangeHandler] = []

        self.store = CredentialStore(self._storage, key_provider, prefix=config.storage_prefix)
        self.coordinator = RefreshCoordinator(
            config,
            self.store,
            http_client=http_client,
            opener=opener,
            navigator=navigator,
            tab_storage=tab_storage or MemoryStorage(),
            on_token_refresh=self._on_token_refreshed,
            on_refresh_failed=self._on_refresh_failed,
            clock=clock,
        )
        self.sync = SessionSynchronizer(
            config.sso,
            shared_storage if shared_storage is not None else self._storage,
            bus=bus,
            hub=hub,
            origin_domain=origin_domain or urlsplit(config.redirect_uri).hostname or "",
            on_session_change=self._on_session_change,
            on_credentials_synced=self.coordinator.adopt,
            on_session_expired=self._on_session_expired,
            clock=clock,
        )

    # --- state ---

    @property
    def current_session(self) -> Session | None:
        return self.sync.current_session

    @property
    def current_credentials(self) -> CredentialSet | None:
        return self.coordinator.get_cached()

    @property
    def profile(self) -> UserProfile | None:
        return self._profile

    @property
    def is_authenticated(self) -> bool:
        return self.current_credentials is not None

    def default_request(self) -> TokenRequest:
        return TokenRequest(scopes=list(self.config.scopes))

    # --- subscriptions ---

    def on_session_change(self, handler: SessionChangeHandler) -> Callable[[], None]:
        self._session_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._session_handlers:
                self._session_handlers.remove(handler)

        return unsubscribe

    def on_auth_event(self, handler: AuthEventHandler) -> Callable[[], None]:
        self._event_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._event_handlers:
                self._event_handlers.remove(handler)

        return unsubscribe

    def _emit(self, event_type: str, correlation_id: str | None = None, **detail) -> None:
        event = AuthEvent(type=event_type, correlation_id=correlation_id or new_correlation_id(), detail=detail)
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Auth event handler failed for %s", event_type)

    # --- collaborator callbacks ---

    def _on_token_refreshed(self, credentials: CredentialSet, scopes: list[str], account: str | None) -> None:
        self._emit("token_refreshed")
        self.sync.sync_credentials(credentials, scopes, account)

    def _on_refresh_failed(self, error: AuthError) -> None:
        self._emit("token_refresh_failed", error=error.to_dict())

    def _on_session_change(self, session: Session | None) -> None:
        if session is None:
            # Logged out here or in a sibling context
            self.coordinator.clear_cache()
            self._profile = None
        for handler in list(self._session_handlers):
            try:
                handler(session)
            except Exception:
                logger.exception("Session change handler failed")

    def _on_session_expired(self) -> None:
        self._emit("session_expired")

    # --- acquisition ---

    async def initialize(self, callback_url: str | None = None) -> Session | None:
        """
        On (re)load: complete a pending redirect login, else restore an SSO session,
        else try silent acquisition. Returns the active session, if any.
        """
        correlation_id = new_correlation_id()
        try:
            if callback_url:
                credentials = await self.coordinator.handle_redirect_response(callback_url)
                if credentials is not None:
                    session = await self._establish(credentials)
                    self._emit("login_success", correlation_id, principal=session.principal)
                    return session

            session = self.sync.detect_session()
            if session is not None and session.metadata.get("account_id"):
                self.coordinator.current_account_id = session.metadata["account_id"]

            credentials = await self.coordinator.acquire_silent(self.default_request())
            if credentials is None:
                return self.sync.current_session
            if session is not None:
                self._profile = await self._resolve_profile(credentials)
                self._emit("sso_detected", correlation_id, principal=session.principal)
                return session
            return await self._establish(credentials)
        except AuthError as e:
            self._emit("error", correlation_id, error=e.to_dict())
            raise

    async def login(
        self,
        request: TokenRequest | None = None,
        *,
        use_popup: bool = False,
        fallback_to_redirect: bool = True,
    ) -> Session | None:
        """
        Interactive login. Returns the new session, or None when a redirect is under way
        (completion arrives through initialize(callback_url)).
        """
        request = request or self.default_request()
        correlation_id = new_correlation_id()
        self._emit("login_initiated", correlation_id, use_popup=use_popup)
        try:
            try:
                credentials = await self.coordinator.acquire_interactive(request, use_popup=use_popup)
            except AuthError as e:
                if not (use_popup and fallback_to_redirect and e.is_popup_failure):
                    raise
                logger.info("Popup login failed (%s), falling back to redirect", e.kind.value)
                credentials = await self.coordinator.acquire_interactive(request, use_popup=False)
            if credentials is None:
                return None
            session = await self._establish(credentials)
        except AuthError as e:
            self._emit("login_failed", correlation_id, error=e.to_dict())
            raise
        self._emit("login_success", correlation_id, principal=session.principal)
        return session

    async def login_silent(self, request: TokenRequest | None = None) -> Session:
        """Login from the cache or a refresh; raises interaction_required when neither works."""
        credentials = await self.coordinator.acquire_silent(request or self.default_request())
        if credentials is None:
            raise AuthError(AuthErrorKind.INTERACTION_REQUIRED, "Silent login failed, interaction required")
        if self.sync.has_active_session():
            return self.sync.current_session
        return await self._establish(credentials)

    async def acquire_token_silent(self, request: TokenRequest | None = None) -> CredentialSet | None:
        return await self.coordinator.acquire_silent(request or self.default_request())

    async def acquire_token(self, request: TokenRequest | None = None, *, use_popup: bool = True) -> CredentialSet | None:
        """Silent first, then interactive with prompt=consent. None when a redirect is under way."""
        request = request or self.default_request()
        credentials = await self.coordinator.acquire_silent(request)
        if credentials is None:
            credentials = await self.coordinator.acquire_interactive(
                dataclasses.replace(request, prompt="consent"), use_popup=use_popup
            )
        if credentials is not None:
            self._emit("token_acquired", scopes=list(credentials.granted_scopes))
        return credentials

    async def _establish(self, credentials: CredentialSet) -> Session:
        self._profile = await self._resolve_profile(credentials)
        return self.sync.start_session(
            self._profile.principal,
            metadata={
                "account_id": credentials.account_id or self.coordinator.current_account_id,
                "display_name": self._profile.display_name,
                "email": self._profile.email,
            },
        )

    async def _resolve_profile(self, credentials: CredentialSet) -> UserProfile:
        if self._profile_provider is not None:
            try:
                return await self._profile_provider.fetch_profile(
                    credentials.access_credential, list(credentials.granted_scopes)
                )
            except AuthError as e:
                logger.warning("Profile lookup failed (%s), using ID token claims", e.kind.value)
        profile = profile_from_claims(credentials)
        if profile is None:
            profile = UserProfile(principal=credentials.account_id or "unknown")
        return profile

    # --- logout ---

    def logout(self, local_only: bool = False) -> str | None:
        """
        End the session everywhere and clear cached credentials. Unless local_only, returns the
        provider's logout address (after handing it to the navigator, when there is one).
        """
        correlation_id = new_correlation_id()
        self._emit("logout_initiated", correlation_id)
        credentials = self.current_credentials
        self.sync.end_session()
        self.coordinator.clear_cache()
        self._profile = None

        if not local_only and self.config.authority:
            url = build_logout_url(
                logout_endpoint=self.config.logout_endpoint,
                post_logout_redirect_uri=self.config.post_logout_redirect_uri,
                id_token_hint=credentials.id_credential if credentials is not None else None,
            )
            if self.navigator is not None:
                self.navigator.assign(url)
            return url

        self._emit("logout_success", correlation_id)
        return None

    # --- activity ---

    def notify_interaction(self) -> bool:
        return self.sync.notify_interaction()

    def record_activity(self) -> bool:
        return self.sync.record_activity()

    # --- lifecycle ---

    def start(self) -> None:
        self.sync.start()

    async def dispose(self) -> None:
        await self.coordinator.dispose()
        self.sync.dispose()
        self._event_handlers.clear()
        self._session_handlers.clear()
        if self._owns_storage and isinstance(self._storage, SqlStorage):
            self._storage.dispose()

    async def __aenter__(self) -> "IdentityClient":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.dispose()
