"""Tests for ClientConfig defaults, validation and env loading."""
import pytest

from identity_client import config as config_module
from identity_client.config import ClientConfig


def test_authority_trailing_slash_is_stripped():
    cfg = ClientConfig(authority="https://idp.example/", client_id="c", redirect_uri="https://app/cb")
    assert cfg.authority == "https://idp.example"
    assert cfg.token_endpoint == "https://idp.example/token"
    assert cfg.authorize_endpoint == "https://idp.example/authorize"
    assert cfg.userinfo_endpoint == "https://idp.example/userinfo"
    assert cfg.logout_endpoint == "https://idp.example/logout"


def test_unknown_cache_location_rejected():
    with pytest.raises(ValueError):
        ClientConfig(authority="https://idp", client_id="c", redirect_uri="r", cache_location="cookies")


def test_defaults():
    cfg = ClientConfig(authority="https://idp", client_id="c", redirect_uri="r")
    assert cfg.refresh_buffer == 300.0
    assert cfg.auto_refresh is True
    assert cfg.sso.session_timeout == 28800
    assert cfg.sso.activity_debounce == 10.0


def test_from_env(monkeypatch):
    monkeypatch.setattr(config_module, "ISSUER", "https://login.corp.example")
    monkeypatch.setattr(config_module, "CLIENT_ID", "portal")
    monkeypatch.setattr(config_module, "CACHE_LOCATION", "durable")
    monkeypatch.setattr(config_module, "DEFAULT_SCOPE", "openid api.read")
    monkeypatch.setattr(config_module, "SESSION_TIMEOUT_SECONDS", 600)

    cfg = ClientConfig.from_env()
    assert cfg.authority == "https://login.corp.example"
    assert cfg.client_id == "portal"
    assert cfg.cache_location == "durable"
    assert cfg.scopes == ["openid", "api.read"]
    assert cfg.sso.session_timeout == 600.0
