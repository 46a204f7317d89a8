"""
Host app for one identity client context.
GET /health, /, /login, /callback, /session, /logout. Port 8000.
"""
import html
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from identity_client.client import IdentityClient
from identity_client.config import ClientConfig
from identity_client.errors import AuthError
from identity_client.interactive import CallbackInbox, RecordingNavigator, SystemBrowserOpener, parse_callback
from identity_client.models import TokenRequest

logger = logging.getLogger(__name__)


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  {body}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def create_app(client: IdentityClient | None = None, inbox: CallbackInbox | None = None) -> FastAPI:
    """
    Build the host app. Without a client, one is configured from the environment with a
    system-browser popup opener and a navigator that turns redirects into 302 responses.
    """
    inbox = inbox or CallbackInbox()
    if client is None:
        client = IdentityClient(
            ClientConfig.from_env(),
            opener=SystemBrowserOpener(inbox),
            navigator=RecordingNavigator(),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client.start()
        yield
        await client.dispose()

    app = FastAPI(title="Identity Client", version="0.1.0", lifespan=lifespan)
    app.state.client = client
    app.state.inbox = inbox

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "identity_client"}

    @app.get("/", response_class=HTMLResponse)
    def home():
        session = client.current_session
        if session is None:
            return _page("Identity Client", '<p>Not signed in. <a href="/login">Log in</a></p>')
        return _page(
            "Identity Client",
            f"""<p>Signed in as <code>{html.escape(session.principal)}</code></p>
  <p><a href="/session">Session</a> | <a href="/logout">Log out</a></p>""",
        )

    @app.get("/login")
    async def login():
        """Start a redirect login; the provider returns to /callback with the result in the query."""
        if not isinstance(client.navigator, RecordingNavigator):
            return _page("Login error", "<p>Redirect login is not available.</p>", status_code=500)
        request = TokenRequest(
            scopes=list(client.config.scopes),
            extra_query_parameters={"response_mode": "query"},
        )
        try:
            await client.login(request, use_popup=False)
        except AuthError as e:
            return _page("Login error", f"<p>{html.escape(e.description)}</p>", status_code=400)
        url = client.navigator.pop()
        if not url:
            return _page("Login error", "<p>No authorization address was produced.</p>", status_code=500)
        return RedirectResponse(url=url, status_code=302)

    @app.get("/callback", response_class=HTMLResponse)
    async def callback(request: Request):
        """Popup callbacks go to the waiting popup flow; anything else completes a redirect login."""
        url = str(request.url)
        state = parse_callback(url).get("state")
        if inbox.expects(state):
            inbox.deliver(state, url)
            return _page("Login complete", "<p>You can close this window.</p>")

        try:
            session = await client.initialize(callback_url=url)
        except AuthError as e:
            logger.warning("Callback rejected: %s", e.kind.value)
            return _page("Login error", f"<p>{html.escape(e.description)}</p>", status_code=400)
        if session is None:
            return _page("Error", "<p>No login in progress. Please try logging in again.</p>", status_code=400)
        return _page(
            "Login success",
            f"<p>Signed in as <code>{html.escape(session.principal)}</code></p>",
        )

    @app.get("/session")
    def session():
        current = client.current_session
        credentials = client.current_credentials
        profile = client.profile
        return JSONResponse(
            {
                "authenticated": credentials is not None,
                "session": current.to_dict() if current is not None else None,
                "expires_at": credentials.expires_at if credentials is not None else None,
                "scopes": list(credentials.granted_scopes) if credentials is not None else [],
                "profile": {
                    "principal": profile.principal,
                    "display_name": profile.display_name,
                    "email": profile.email,
                    "groups": profile.groups,
                }
                if profile is not None
                else None,
            }
        )

    @app.get("/logout")
    def logout(local: bool = False):
        url = client.logout(local_only=local)
        if isinstance(client.navigator, RecordingNavigator):
            client.navigator.pop()
        return RedirectResponse(url=url or "/", status_code=302)

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(create_app(), host="127.0.0.1", port=8000)
