"""Tests for the userinfo profile provider and the ID-token fallback."""
import json

import httpx
import pytest

from identity_client.errors import AuthError, AuthErrorKind
from identity_client.profile import UserInfoProfileProvider, profile_from_claims
from identity_client.tests.fakes import make_credentials


def _provider(status: int, body, seen: list | None = None) -> UserInfoProfileProvider:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, content=json.dumps(body), headers={"content-type": "application/json"})

    return UserInfoProfileProvider(
        "https://idp.example/userinfo",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_fetch_profile_sends_bearer_and_maps_claims():
    seen = []
    provider = _provider(
        200,
        {"sub": "u1", "preferred_username": "alice@corp", "name": "Alice", "email": "a@corp", "groups": ["g1", "g2"]},
        seen,
    )
    profile = await provider.fetch_profile("at-1", ["openid"])
    assert seen[0].headers["authorization"] == "Bearer at-1"
    assert profile.principal == "alice@corp"
    assert profile.display_name == "Alice"
    assert profile.email == "a@corp"
    assert profile.groups == ["g1", "g2"]


@pytest.mark.asyncio
async def test_rejected_access_credential_requires_interaction():
    with pytest.raises(AuthError) as exc:
        await _provider(401, {}).fetch_profile("bad", [])
    assert exc.value.kind == AuthErrorKind.INTERACTION_REQUIRED


@pytest.mark.asyncio
async def test_server_error_is_network_error():
    with pytest.raises(AuthError) as exc:
        await _provider(503, {}).fetch_profile("at", [])
    assert exc.value.kind == AuthErrorKind.NETWORK_ERROR


def test_profile_from_claims():
    profile = profile_from_claims(make_credentials(1000.0))
    assert profile.principal == "user-1@example.com"
    assert profile.claims["sub"] == "user-1"


def test_profile_from_opaque_id_token():
    creds = make_credentials(1000.0)
    creds.id_credential = "opaque"
    assert profile_from_claims(creds) is None
