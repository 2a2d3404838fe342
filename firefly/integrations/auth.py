"""
Firefly Offline Sync — Session token handling.

The identity provider is an external capability: it exchanges an OAuth
code (or hands back implicit-flow tokens in a URL fragment) for a token
pair. This module only turns that pair into the bearer token the remote
store adapter attaches to every request.

Flow:
1. A callback hands over a code (exchange_code) or a redirect URL whose
   fragment carries the tokens (parse_implicit_fragment).
2. The pair is persisted to TOKEN_PATH (set_session).
3. get_access_token() loads the pair, refreshes it when expired, saves
   the refreshed pair and returns the access token.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx

from firefly.ports.auth_port import AuthError

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10
_EXPIRY_SKEW_SECONDS = 30


@dataclass
class TokenPair:
    """Access/refresh token pair issued by the identity provider."""

    access_token: str
    refresh_token: str
    expires_at: float | None = None   # epoch seconds

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - _EXPIRY_SKEW_SECONDS

    @classmethod
    def from_response(cls, data: dict) -> TokenPair:
        access = data.get("access_token")
        refresh = data.get("refresh_token")
        if not access or not refresh:
            raise AuthError("Token response is missing access_token or refresh_token")
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = time.time() + int(data["expires_in"])
        return cls(
            access_token=access,
            refresh_token=refresh,
            expires_at=float(expires_at) if expires_at is not None else None,
        )


def parse_implicit_fragment(url: str) -> TokenPair | None:
    """Extract implicit-flow tokens from a redirect URL's ``#fragment``.

    Returns None when the fragment carries no token pair. Raises AuthError
    when the provider redirected with an error.
    """
    parts = urlsplit(url)
    query = parse_qs(parts.query)
    if "error" in query:
        description = query.get("error_description", [""])[0]
        raise AuthError(f"OAuth provider error: {query['error'][0]} {description}".strip())

    params = {k: v[0] for k, v in parse_qs(parts.fragment).items()}
    if not params.get("access_token") or not params.get("refresh_token"):
        return None
    return TokenPair.from_response(params)


class AuthClient:
    """Minimal token-endpoint client for the hosted identity provider."""

    def __init__(self, auth_url: str, api_key: str = "", timeout: float = _TIMEOUT_SECONDS) -> None:
        self._auth_url = auth_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    async def _token_request(self, grant_type: str, body: dict) -> TokenPair:
        if not self._auth_url:
            raise AuthError("FIREFLY_AUTH_URL is not configured")
        headers = {"apikey": self._api_key} if self._api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._auth_url}/token",
                    params={"grant_type": grant_type},
                    json=body,
                    headers=headers,
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            logger.error("Token request (%s) failed: %s", grant_type, exc)
            raise AuthError(f"Token request failed: {exc}") from exc
        return TokenPair.from_response(data)

    async def exchange_code(self, code: str, code_verifier: str = "") -> TokenPair:
        """Exchange an OAuth authorization code for a token pair."""
        pair = await self._token_request(
            "pkce", {"auth_code": code, "code_verifier": code_verifier},
        )
        logger.info("Authorization code exchanged for a session")
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        pair = await self._token_request("refresh_token", {"refresh_token": refresh_token})
        logger.info("Access token refreshed")
        return pair


class FileTokenProvider:
    """TokenProvider backed by a JSON token file, refreshed on expiry."""

    def __init__(self, token_path: str, auth_client: AuthClient | None = None) -> None:
        self._path = Path(token_path)
        self._auth = auth_client
        self._pair: TokenPair | None = None

    def _load(self) -> TokenPair | None:
        if self._pair is None and self._path.exists():
            try:
                self._pair = TokenPair(**json.loads(self._path.read_text()))
                logger.debug("Loaded session token from %s", self._path)
            except (ValueError, TypeError) as exc:
                logger.warning("Ignoring unreadable token file %s: %s", self._path, exc)
        return self._pair

    def set_session(self, pair: TokenPair) -> None:
        """Persist a freshly issued token pair."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(asdict(pair)))
        self._pair = pair
        logger.debug("Session token saved to %s", self._path)

    async def get_access_token(self) -> str:
        pair = self._load()
        if pair is None:
            raise AuthError(f"No session token at {self._path}; sign in first")
        if pair.is_expired():
            if self._auth is None:
                raise AuthError("Access token expired and no auth client to refresh it")
            self.set_session(await self._auth.refresh(pair.refresh_token))
        return self._pair.access_token


class StaticTokenProvider:
    """TokenProvider returning a fixed token (scripts, tests)."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def get_access_token(self) -> str:
        if not self._token:
            raise AuthError("No access token configured")
        return self._token
