"""Tests for the host app routes."""
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from identity_client.client import IdentityClient
from identity_client.interactive import CallbackInbox, RecordingNavigator
from identity_client.main import create_app
from identity_client.storage import MemoryStorage
from identity_client.tests.fakes import FakeTokenEndpoint, make_config


@pytest.fixture
def inbox():
    return CallbackInbox()


@pytest.fixture
def identity(inbox):
    return IdentityClient(
        make_config(),
        storage=MemoryStorage(),
        http_client=FakeTokenEndpoint().client(),
        navigator=RecordingNavigator(),
    )


@pytest.fixture
def client(identity, inbox):
    return TestClient(create_app(identity, inbox))


def _login(client) -> dict:
    r = client.get("/login", follow_redirects=False)
    assert r.status_code == 302
    return {k: v[0] for k, v in parse_qs(urlsplit(r.headers["location"]).query).items()}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "identity_client"


def test_home_shows_login_link_when_signed_out(client):
    r = client.get("/")
    assert r.status_code == 200
    assert "/login" in r.text


def test_login_redirects_to_provider(client):
    q = _login(client)
    assert q["response_type"] == "code"
    assert q["response_mode"] == "query"
    assert q["code_challenge_method"] == "S256"
    assert q["state"]
    assert q["nonce"]


def test_callback_completes_login(client):
    q = _login(client)
    r = client.get("/callback", params={"state": q["state"], "code": "auth-code-xyz"})
    assert r.status_code == 200
    assert "success" in r.text.lower()

    session = client.get("/session").json()
    assert session["authenticated"] is True
    assert session["session"]["principal"] == "user-1@example.com"
    assert session["profile"]["principal"] == "user-1@example.com"
    assert "access_token" not in str(session) and "at-new" not in str(session)

    assert "user-1@example.com" in client.get("/").text


def test_callback_unknown_state(client):
    _login(client)
    r = client.get("/callback", params={"state": "unknown-state", "code": "somecode"})
    assert r.status_code == 400
    assert "state" in r.text.lower()


def test_callback_error_from_provider(client):
    q = _login(client)
    r = client.get(
        "/callback",
        params={"state": q["state"], "error": "access_denied", "error_description": "User denied"},
    )
    assert r.status_code == 400
    assert "User denied" in r.text


def test_callback_without_login_in_progress(client):
    r = client.get("/callback")
    assert r.status_code == 400


def test_callback_delivers_to_waiting_popup(client, inbox):
    inbox.expect("popup-state")
    r = client.get("/callback", params={"state": "popup-state", "code": "c"})
    assert r.status_code == 200
    assert "close this window" in r.text
    assert "state=popup-state" in inbox.peek("popup-state")


def test_session_when_signed_out(client):
    body = client.get("/session").json()
    assert body["authenticated"] is False
    assert body["session"] is None


def test_logout_redirects_to_provider(client):
    q = _login(client)
    client.get("/callback", params={"state": q["state"], "code": "c"})
    r = client.get("/logout", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"].startswith("https://idp.example/logout?")
    assert client.get("/session").json()["authenticated"] is False


def test_local_logout_redirects_home(client):
    r = client.get("/logout", params={"local": "true"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/"
