"""
Profile/group lookup collaborator. Receives a valid access credential and its scopes, returns a UserProfile.
"""
import logging

import httpx

from identity_client.errors import AuthError, AuthErrorKind, classify_token_error
from identity_client.models import CredentialSet, UserProfile, unverified_claims

logger = logging.getLogger(__name__)

# ID token claims tried, in order, for a stable principal
PRINCIPAL_CLAIMS = ("preferred_username", "upn", "email", "sub")


class ProfileProvider:
    async def fetch_profile(self, access_token: str, scopes: list[str]) -> UserProfile:
        raise NotImplementedError


class UserInfoProfileProvider(ProfileProvider):
    """GET {authority}/userinfo with the access credential as a Bearer token."""

    def __init__(self, userinfo_endpoint: str, http_client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self._endpoint = userinfo_endpoint
        self._http = http_client
        self._timeout = timeout

    async def fetch_profile(self, access_token: str, scopes: list[str]) -> UserProfile:
        http = self._http or httpx.AsyncClient()
        try:
            r = await http.get(
                self._endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise AuthError(AuthErrorKind.NETWORK_ERROR, f"Profile request failed: {e}") from e
        finally:
            if self._http is None:
                await http.aclose()

        if r.status_code == 401:
            raise AuthError(AuthErrorKind.INTERACTION_REQUIRED, "Access credential rejected by profile endpoint")
        if r.status_code != 200:
            try:
                body = r.json()
            except ValueError:
                body = {}
            raise classify_token_error(r.status_code, body if isinstance(body, dict) else {})
        try:
            claims = r.json()
        except ValueError as e:
            raise AuthError(AuthErrorKind.TOKEN_PARSE_ERROR, "Profile response is not JSON") from e
        return _profile(claims)


def profile_from_claims(credentials: CredentialSet) -> UserProfile | None:
    """Fallback profile from the ID token alone; None when there is no usable principal."""
    claims = unverified_claims(credentials.id_credential)
    profile = _profile(claims)
    if not profile.principal:
        return None
    return profile


def _profile(claims: dict) -> UserProfile:
    principal = next((str(claims[c]) for c in PRINCIPAL_CLAIMS if claims.get(c)), "")
    groups = claims.get("groups") or []
    if isinstance(groups, str):
        groups = groups.split()
    return UserProfile(
        principal=principal,
        display_name=claims.get("name"),
        email=claims.get("email"),
        groups=list(groups),
        claims=dict(claims),
    )
