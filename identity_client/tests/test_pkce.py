"""Tests for PKCE, correlation values and provider address building."""
import hashlib
import re
from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlsplit

import pytest

from identity_client.pkce import (
    build_authorize_url,
    build_logout_url,
    generate_nonce,
    generate_pkce,
    generate_state,
    s256_challenge,
)


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_generate_state_length():
    s = generate_state()
    assert len(s) >= 32
    assert re.match(r"^[A-Za-z0-9_-]+$", s)


def test_generate_nonce_length():
    n = generate_nonce()
    assert len(n) >= 32
    assert re.match(r"^[A-Za-z0-9_-]+$", n)


def test_state_values_are_unique():
    assert len({generate_state() for _ in range(50)}) == 50


def test_generate_pkce_returns_verifier_and_challenge():
    verifier, challenge = generate_pkce()
    assert 43 <= len(verifier) <= 128
    assert re.match(r"^[A-Za-z0-9_-]+$", verifier)
    assert len(challenge) == 43  # base64url(SHA256 digest) no padding
    expected = urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).rstrip(b"=").decode("ascii")
    assert challenge == expected


def test_s256_challenge_matches_rfc7636_example():
    assert s256_challenge("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_generate_pkce_verifier_size_bounds():
    assert len(generate_pkce(96)[0]) == 128
    with pytest.raises(ValueError):
        generate_pkce(16)
    with pytest.raises(ValueError):
        generate_pkce(97)


def test_build_authorize_url_includes_required_params():
    url = build_authorize_url(
        authorize_endpoint="https://idp.example/authorize",
        client_id="client1",
        redirect_uri="https://app.example/cb",
        scopes=["openid", "api.read"],
        state="mystate",
        nonce="mynonce",
        code_challenge="challenge123",
    )
    assert url.startswith("https://idp.example/authorize?")
    q = _query(url)
    assert q["response_type"] == "code"
    assert q["response_mode"] == "fragment"
    assert q["client_id"] == "client1"
    assert q["redirect_uri"] == "https://app.example/cb"
    assert q["scope"] == "openid api.read"
    assert q["state"] == "mystate"
    assert q["nonce"] == "mynonce"
    assert q["code_challenge"] == "challenge123"
    assert q["code_challenge_method"] == "S256"


def test_build_authorize_url_optional_hints():
    url = build_authorize_url(
        authorize_endpoint="https://idp.example/authorize",
        client_id="c",
        redirect_uri="https://c/cb",
        scopes=["api.read"],
        state="s",
        prompt="consent",
        login_hint="alice@example.com",
        domain_hint="example.com",
        extra_params={"response_mode": "query"},
    )
    q = _query(url)
    assert q["prompt"] == "consent"
    assert q["login_hint"] == "alice@example.com"
    assert q["domain_hint"] == "example.com"
    assert q["response_mode"] == "query"
    assert "nonce" not in q
    assert "code_challenge" not in q


def test_build_logout_url():
    url = build_logout_url(
        logout_endpoint="https://idp.example/logout",
        post_logout_redirect_uri="https://app.example/bye",
        id_token_hint="idt",
    )
    q = _query(url)
    assert q == {"id_token_hint": "idt", "post_logout_redirect_uri": "https://app.example/bye"}


def test_build_logout_url_without_params():
    assert build_logout_url(logout_endpoint="https://idp.example/logout") == "https://idp.example/logout"
