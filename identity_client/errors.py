"""
Closed error taxonomy for token acquisition, refresh and interactive flows.
Provider error bodies are classified once, in classify_token_error; nothing else inspects error strings.
"""
import time
from enum import Enum


class AuthErrorKind(str, Enum):
    CONFIG_ERROR = "config_error"
    NETWORK_ERROR = "network_error"
    CREDENTIAL_REJECTED = "credential_rejected"
    STATE_MISMATCH = "state_mismatch"
    POPUP_BLOCKED = "popup_blocked"
    POPUP_CLOSED = "popup_closed"
    POPUP_TIMEOUT = "popup_timeout"
    NO_REFRESH_CREDENTIAL = "no_refresh_credential"
    INTERACTION_REQUIRED = "interaction_required"
    TOKEN_PARSE_ERROR = "token_parse_error"
    PROVIDER_ERROR = "provider_error"


# Never retried; the caller has to fix configuration or restart the login
NON_RECOVERABLE = frozenset({AuthErrorKind.CONFIG_ERROR, AuthErrorKind.STATE_MISMATCH})

# The consumer must be offered a fresh interactive flow
INTERACTION_KINDS = frozenset(
    {
        AuthErrorKind.CREDENTIAL_REJECTED,
        AuthErrorKind.NO_REFRESH_CREDENTIAL,
        AuthErrorKind.INTERACTION_REQUIRED,
        AuthErrorKind.PROVIDER_ERROR,
    }
)

# Interactive-flow failures the caller can recover from with the redirect flow
POPUP_KINDS = frozenset({AuthErrorKind.POPUP_BLOCKED, AuthErrorKind.POPUP_CLOSED, AuthErrorKind.POPUP_TIMEOUT})

# Provider error codes meaning "this refresh credential is no good"
REJECTION_CODES = frozenset(
    {"invalid_grant", "interaction_required", "consent_required", "login_required", "credential_rejected"}
)
CLIENT_CONFIG_CODES = frozenset({"invalid_client", "unauthorized_client"})


class AuthError(Exception):
    """Authentication failure with a closed kind. error_code keeps the provider's raw code, if any."""

    def __init__(self, kind: AuthErrorKind, description: str, *, error_code: str | None = None):
        super().__init__(f"{kind.value}: {description}")
        self.kind = kind
        self.description = description
        self.error_code = error_code
        self.timestamp = time.time()

    @property
    def recoverable(self) -> bool:
        return self.kind not in NON_RECOVERABLE

    @property
    def requires_interaction(self) -> bool:
        return self.kind in INTERACTION_KINDS

    @property
    def is_popup_failure(self) -> bool:
        return self.kind in POPUP_KINDS

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "description": self.description,
            "error_code": self.error_code,
            "recoverable": self.recoverable,
            "requires_interaction": self.requires_interaction,
        }


def classify_token_error(status_code: int, body: dict | None) -> AuthError:
    """
    Map a failed token-endpoint response to an AuthError.
    Accepts both {error, error_description} and {error_code, error_description} bodies.
    """
    body = body or {}
    code = body.get("error_code") or body.get("error")
    description = body.get("error_description") or f"Token request failed (HTTP {status_code})"
    if code in REJECTION_CODES:
        return AuthError(AuthErrorKind.CREDENTIAL_REJECTED, description, error_code=code)
    if code in CLIENT_CONFIG_CODES:
        return AuthError(AuthErrorKind.CONFIG_ERROR, description, error_code=code)
    if status_code >= 500 or status_code == 429:
        return AuthError(AuthErrorKind.NETWORK_ERROR, description, error_code=code)
    return AuthError(AuthErrorKind.PROVIDER_ERROR, description, error_code=code)
