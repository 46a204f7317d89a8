"""
Credential, cache, session and broadcast records.
All timestamps are absolute POSIX seconds; durations are seconds.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import jwt


# Lifetime assumed when the provider omits expires_in
DEFAULT_TOKEN_LIFETIME = 3600


def cache_key(account: str | None, scopes: list[str] | tuple[str, ...]) -> str:
    """Deterministic key for (account, scope set): scope order and duplicates do not matter."""
    return f"{account or 'default'}_{'|'.join(sorted(set(scopes)))}"


def unverified_claims(token: str | None) -> dict:
    """Claims of a JWT without signature verification; {} for opaque or malformed tokens."""
    if not token:
        return {}
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return {}


@dataclass
class CredentialSet:
    access_credential: str
    id_credential: str
    expires_at: float
    granted_scopes: list[str] = field(default_factory=list)
    refresh_credential: str | None = None
    credential_type: str = "Bearer"
    account_id: str | None = None

    def is_expiring(self, buffer_seconds: float, now: float | None = None) -> bool:
        """True when expired or within buffer_seconds of expiry."""
        now = time.time() if now is None else now
        return now >= self.expires_at - buffer_seconds

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_credential)

    @classmethod
    def from_token_response(
        cls,
        data: dict,
        *,
        fallback_scopes: list[str],
        previous_refresh: str | None = None,
        now: float | None = None,
    ) -> "CredentialSet":
        """
        Build from a token response (endpoint JSON or callback parameters).
        expires_in becomes an absolute expires_at. A provider that does not rotate refresh
        credentials omits refresh_token, so the previous one is kept.
        """
        now = time.time() if now is None else now
        try:
            expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME
        scope = data.get("scope")
        id_credential = data.get("id_token") or ""
        claims = unverified_claims(id_credential)
        return cls(
            access_credential=data["access_token"],
            id_credential=id_credential,
            refresh_credential=data.get("refresh_token") or previous_refresh,
            expires_at=now + expires_in,
            granted_scopes=scope.split() if scope else list(fallback_scopes),
            credential_type=data.get("token_type") or "Bearer",
            account_id=claims.get("oid") or claims.get("sub"),
        )

    def to_dict(self) -> dict:
        return {
            "access_credential": self.access_credential,
            "id_credential": self.id_credential,
            "refresh_credential": self.refresh_credential,
            "expires_at": self.expires_at,
            "granted_scopes": list(self.granted_scopes),
            "credential_type": self.credential_type,
            "account_id": self.account_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CredentialSet":
        return cls(
            access_credential=data["access_credential"],
            id_credential=data.get("id_credential") or "",
            refresh_credential=data.get("refresh_credential"),
            expires_at=float(data["expires_at"]),
            granted_scopes=list(data.get("granted_scopes") or []),
            credential_type=data.get("credential_type") or "Bearer",
            account_id=data.get("account_id"),
        )


@dataclass
class CacheEntry:
    credentials: CredentialSet
    account_id: str
    scopes: list[str]
    cached_at: float

    def to_dict(self) -> dict:
        return {
            "credentials": self.credentials.to_dict(),
            "account_id": self.account_id,
            "scopes": list(self.scopes),
            "cached_at": self.cached_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            credentials=CredentialSet.from_dict(data["credentials"]),
            account_id=data.get("account_id") or "",
            scopes=list(data.get("scopes") or []),
            cached_at=float(data.get("cached_at") or 0),
        )


@dataclass
class Session:
    session_id: str
    principal: str
    created_at: float
    last_activity: float
    expires_at: float
    is_valid: bool = True
    origin_domain: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "principal": self.principal,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "expires_at": self.expires_at,
            "is_valid": self.is_valid,
            "origin_domain": self.origin_domain,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            session_id=data["session_id"],
            principal=data.get("principal") or "",
            created_at=float(data["created_at"]),
            last_activity=float(data["last_activity"]),
            expires_at=float(data["expires_at"]),
            is_valid=bool(data.get("is_valid", True)),
            origin_domain=data.get("origin_domain") or "",
            metadata=dict(data.get("metadata") or {}),
        )


class MessageType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    EXPIRED = "expired"
    ENDED = "ended"
    ACTIVITY_PING = "activity_ping"
    CREDENTIAL_REFRESHED = "credential_refreshed"


@dataclass
class BroadcastMessage:
    """Transient; only ever transmitted, never persisted as state."""

    type: MessageType
    session_id: str
    timestamp: float
    payload: dict | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BroadcastMessage":
        return cls(
            type=MessageType(data["type"]),
            session_id=data["session_id"],
            timestamp=float(data["timestamp"]),
            payload=data.get("payload"),
        )


@dataclass
class TokenRequest:
    scopes: list[str]
    account: str | None = None
    force_refresh: bool = False
    prompt: str | None = None
    login_hint: str | None = None
    domain_hint: str | None = None
    extra_query_parameters: dict[str, str] = field(default_factory=dict)


@dataclass
class RefreshResult:
    success: bool
    credentials: CredentialSet | None = None
    error: Any = None  # AuthError
    requires_interaction: bool = False


@dataclass
class UserProfile:
    principal: str
    display_name: str | None = None
    email: str | None = None
    groups: list[str] = field(default_factory=list)
    claims: dict = field(default_factory=dict)


@dataclass
class AuthEvent:
    type: str
    correlation_id: str
    detail: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
