"""
Identity client configuration.
Defaults come from the environment; ClientConfig is the validated object the core consumes.
"""
import os
from dataclasses import dataclass, field

# Identity provider (authority); authorize, token, userinfo and logout live under it
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# Our client_id (must be registered at the provider)
CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID", "test-client")

# Callback address the provider returns to after authorization (popup and redirect flows)
REDIRECT_URI = os.environ.get("OAUTH_REDIRECT_URI", "http://127.0.0.1:8000/callback")

# Where the provider sends the browser after logout
POST_LOGOUT_REDIRECT_URI = os.environ.get("OAUTH_POST_LOGOUT_REDIRECT_URI", "http://127.0.0.1:8000/logged-out")

# Default scopes: openid (nonce required) + offline_access so a refresh credential is issued
DEFAULT_SCOPE = os.environ.get("OAUTH_SCOPE", "openid profile offline_access")

# memory | tab-scoped | durable
CACHE_LOCATION = os.environ.get("OAUTH_CACHE_LOCATION", "tab-scoped")

# Refresh this long before expiry (seconds). 5 minutes.
REFRESH_BUFFER_SECONDS = int(os.environ.get("OAUTH_REFRESH_BUFFER_SECONDS", "300"))

# SSO session lifetime without activity (seconds). 8 hours.
SESSION_TIMEOUT_SECONDS = int(os.environ.get("OAUTH_SESSION_TIMEOUT_SECONDS", "28800"))

# Durable storage shared by every context of one origin
DATABASE_URL = os.environ.get("IDENTITY_DATABASE_URL", "sqlite:///./identity_client.db")

CACHE_LOCATIONS = ("memory", "tab-scoped", "durable")


@dataclass
class SSOConfig:
    cross_context_sync: bool = True
    session_timeout: float = SESSION_TIMEOUT_SECONDS
    track_activity: bool = True
    activity_check_interval: float = 60.0
    session_check_interval: float = 60.0
    # At most one persisted write + broadcast per window of raw interaction signals
    activity_debounce: float = 10.0
    auto_extend_session: bool = True
    allowed_domains: list[str] = field(default_factory=list)
    storage_prefix: str = "idc.sso."


@dataclass
class ClientConfig:
    authority: str
    client_id: str
    redirect_uri: str
    scopes: list[str] = field(default_factory=lambda: DEFAULT_SCOPE.split())
    cache_location: str = "tab-scoped"
    refresh_buffer: float = 300.0
    auto_refresh: bool = True
    post_logout_redirect_uri: str | None = None
    response_type: str = "code"
    popup_timeout: float = 120.0
    popup_poll_interval: float = 0.1
    request_timeout: float = 10.0
    storage_prefix: str = "idc."
    database_url: str = DATABASE_URL
    sso: SSOConfig = field(default_factory=SSOConfig)

    def __post_init__(self) -> None:
        self.authority = (self.authority or "").rstrip("/")
        if self.cache_location not in CACHE_LOCATIONS:
            raise ValueError(f"cache_location must be one of {CACHE_LOCATIONS}, got {self.cache_location!r}")

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.authority}/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/token"

    @property
    def userinfo_endpoint(self) -> str:
        return f"{self.authority}/userinfo"

    @property
    def logout_endpoint(self) -> str:
        return f"{self.authority}/logout"

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Build a config from OAUTH_* / IDENTITY_* environment variables."""
        return cls(
            authority=ISSUER,
            client_id=CLIENT_ID,
            redirect_uri=REDIRECT_URI,
            scopes=DEFAULT_SCOPE.split(),
            cache_location=CACHE_LOCATION,
            refresh_buffer=float(REFRESH_BUFFER_SECONDS),
            post_logout_redirect_uri=POST_LOGOUT_REDIRECT_URI,
            database_url=DATABASE_URL,
            sso=SSOConfig(session_timeout=float(SESSION_TIMEOUT_SECONDS)),
        )
