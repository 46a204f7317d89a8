"""Test doubles: clock, token endpoint, popup windows."""
import asyncio
import json
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
import jwt

from identity_client.config import ClientConfig
from identity_client.interactive import CrossOriginError, PopupWindow, WindowOpener
from identity_client.models import CredentialSet

AUTHORITY = "https://idp.example"
REDIRECT_URI = "https://app.example/callback"
SCOPES = ["openid", "profile", "offline_access"]
SIGNING_KEY = "test-signing-key-not-for-production-use"


def make_config(**overrides) -> ClientConfig:
    values = dict(
        authority=AUTHORITY,
        client_id="client1",
        redirect_uri=REDIRECT_URI,
        scopes=list(SCOPES),
        post_logout_redirect_uri="https://app.example/logged-out",
        popup_poll_interval=0.01,
        database_url="sqlite:///:memory:",
    )
    values.update(overrides)
    return ClientConfig(**values)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_id_token(sub: str = "user-1", **claims) -> str:
    return jwt.encode({"sub": sub, **claims}, SIGNING_KEY, algorithm="HS256")


def make_credentials(now: float, expires_in: float = 3600, refresh: str | None = "rt-1", account: str = "user-1") -> CredentialSet:
    return CredentialSet(
        access_credential="at-1",
        id_credential=make_id_token(account, preferred_username=f"{account}@example.com"),
        expires_at=now + expires_in,
        granted_scopes=list(SCOPES),
        refresh_credential=refresh,
        account_id=account,
    )


def token_response(access_token: str = "at-new", refresh_token: str | None = "rt-new", **extra) -> dict:
    body = {
        "access_token": access_token,
        "id_token": make_id_token("user-1", preferred_username="user-1@example.com"),
        "token_type": "Bearer",
        "expires_in": 3600,
        "scope": " ".join(SCOPES),
    }
    if refresh_token:
        body["refresh_token"] = refresh_token
    body.update(extra)
    return body


class FakeTokenEndpoint:
    """Scripted /token responses; records every request form it receives."""

    def __init__(self, *responses, delay: float = 0.0):
        self.responses = list(responses) or [(200, token_response())]
        self.delay = delay
        self.requests: list[dict] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams((await request.aread()).decode("utf-8")))
        self.requests.append(form)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, content=json.dumps(body), headers={"content-type": "application/json"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class ScriptedPopup(PopupWindow):
    """
    Popup that stays cross-origin for `polls_before_return` location reads, then shows return_url.
    close_after_polls simulates the user closing it.
    """

    def __init__(self, return_url: str | None = None, polls_before_return: int = 2, close_after_polls: int | None = None):
        self.return_url = return_url
        self.polls_before_return = polls_before_return
        self.close_after_polls = close_after_polls
        self.polls = 0
        self.closed_by_flow = False

    @property
    def closed(self) -> bool:
        return self.closed_by_flow or (self.close_after_polls is not None and self.polls >= self.close_after_polls)

    @property
    def location(self) -> str:
        self.polls += 1
        if self.return_url is None or self.polls <= self.polls_before_return:
            raise CrossOriginError("cross-origin")
        return self.return_url

    def close(self) -> None:
        self.closed_by_flow = True


class ScriptedOpener(WindowOpener):
    """Opens whatever popup_factory builds for the authorize address; blocked=True models a popup blocker."""

    def __init__(self, popup_factory=None, blocked: bool = False):
        self.popup_factory = popup_factory
        self.blocked = blocked
        self.opened: list[str] = []
        self.popup: PopupWindow | None = None

    def open(self, url: str) -> PopupWindow | None:
        self.opened.append(url)
        if self.blocked:
            return None
        self.popup = self.popup_factory(url)
        return self.popup


def returning_popup(polls_before_return: int = 2, state: str | None = None, **params):
    """
    Popup factory whose popup comes back to the redirect address with params in the fragment.
    state defaults to the one in the authorize address; callable values receive the authorize query.
    """

    def factory(url: str) -> ScriptedPopup:
        query = dict(parse_qsl(urlsplit(url).query))
        values = {k: v(query) if callable(v) else v for k, v in params.items()}
        fragment = urlencode({"state": state or query["state"], **values})
        return ScriptedPopup(f"{REDIRECT_URI}#{fragment}", polls_before_return=polls_before_return)

    return factory
