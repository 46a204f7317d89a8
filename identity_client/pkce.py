"""
PKCE (RFC 7636), state/nonce generation and provider address builders for interactive flows.
S256 only.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import urlencode


CORRELATION_BYTES = 32

# RFC 7636 section 4.1: verifier is 43..128 base64url chars
VERIFIER_BYTES = (32, 96)


def _b64url(raw: bytes) -> str:
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """Correlates a callback with the interactive request that started it."""
    return _b64url(secrets.token_bytes(CORRELATION_BYTES))


def generate_nonce() -> str:
    return _b64url(secrets.token_bytes(CORRELATION_BYTES))


def s256_challenge(code_verifier: str) -> str:
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_pkce(verifier_bytes: int = 32) -> tuple[str, str]:
    """Return (code_verifier, code_challenge) for the S256 method."""
    low, high = VERIFIER_BYTES
    if not low <= verifier_bytes <= high:
        raise ValueError(f"verifier_bytes must be between {low} and {high}")
    code_verifier = _b64url(secrets.token_bytes(verifier_bytes))
    return code_verifier, s256_challenge(code_verifier)


def build_authorize_url(
    *,
    authorize_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    nonce: str | None = None,
    response_type: str = "code",
    code_challenge: str | None = None,
    prompt: str | None = None,
    login_hint: str | None = None,
    domain_hint: str | None = None,
    extra_params: dict[str, str] | None = None,
) -> str:
    """Authorization address; the credential payload comes back in the callback fragment."""
    params = {
        "response_type": response_type,
        "response_mode": "fragment",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "state": state,
    }
    if nonce:
        params["nonce"] = nonce
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    if prompt:
        params["prompt"] = prompt
    if login_hint:
        params["login_hint"] = login_hint
    if domain_hint:
        params["domain_hint"] = domain_hint
    if extra_params:
        params.update(extra_params)
    return f"{authorize_endpoint}?{urlencode(params)}"


def build_logout_url(
    *,
    logout_endpoint: str,
    post_logout_redirect_uri: str | None = None,
    id_token_hint: str | None = None,
    logout_hint: str | None = None,
) -> str:
    """RP-initiated logout address."""
    params = {}
    if id_token_hint:
        params["id_token_hint"] = id_token_hint
    if post_logout_redirect_uri:
        params["post_logout_redirect_uri"] = post_logout_redirect_uri
    if logout_hint:
        params["logout_hint"] = logout_hint
    if not params:
        return logout_endpoint
    return f"{logout_endpoint}?{urlencode(params)}"
