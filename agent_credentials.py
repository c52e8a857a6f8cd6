"""
Google OAuth credential lifecycle.

A Credential is the access/refresh token pair plus `expires_at` (epoch millis).
Before any Gmail/Calendar call the credential goes through ensure_valid():

- still valid for more than REFRESH_SKEW_MS -> returned as-is, no network call
- otherwise a refresh-token grant runs against Google's token endpoint; the new
  access token and expiry replace the old ones, the refresh token is kept
- any refresh failure -> AuthExpired ("session expired, reconnect")

SessionStore keeps credentials per session id (created at OAuth callback,
dropped on logout) and serializes refreshes per key so concurrent requests on
the same session never race two refresh grants.
"""
from __future__ import annotations
import os, logging, functools, datetime as dt
from typing import Any, Dict, Optional, Tuple

import anyio
from dotenv import load_dotenv
load_dotenv()

from pydantic import BaseModel
from google.oauth2.credentials import Credentials
from google.auth.transport.requests import Request
from google.auth.exceptions import GoogleAuthError

from agent_http import REQUEST_TIMEOUT

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

REFRESH_SKEW_MS = 60_000
DEFAULT_EXPIRES_IN = 3600

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base for credential failures; str(exc) is safe to show the user."""


class NotAuthenticated(AuthError):
    def __init__(self, message: str = "Please connect your Google account first"):
        super().__init__(message)


class AuthExpired(AuthError):
    def __init__(self, message: str = "Session expired. Please reconnect."):
        super().__init__(message)


class OAuthConfigError(AuthError):
    def __init__(self, message: str = "OAuth not configured"):
        super().__init__(message)


class Credential(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: int  # epoch millis
    user: Optional[Dict[str, Any]] = None


def now_ms() -> int:
    return int(dt.datetime.now(dt.timezone.utc).timestamp() * 1000)


def needs_refresh(credential: Credential, now: Optional[int] = None) -> bool:
    now = now_ms() if now is None else now
    if not credential.expires_at:
        return False
    return now >= credential.expires_at - REFRESH_SKEW_MS


def _oauth_client(client_id: Optional[str], client_secret: Optional[str]) -> Tuple[str, str]:
    cid = client_id or GOOGLE_CLIENT_ID
    secret = client_secret or GOOGLE_CLIENT_SECRET
    if not cid or not secret:
        raise OAuthConfigError()
    return cid, secret


def _refresh_grant(refresh_token: str, client_id: str, client_secret: str) -> Tuple[str, Optional[dt.datetime]]:
    """Blocking refresh-token grant. Returns (access_token, expiry as naive UTC)."""
    creds = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=GOOGLE_TOKEN_URL,
        client_id=client_id,
        client_secret=client_secret,
    )
    creds.refresh(functools.partial(Request(), timeout=REQUEST_TIMEOUT))
    return creds.token, creds.expiry


def _expiry_to_ms(expiry: Optional[dt.datetime], now: int) -> int:
    if expiry is None:
        return now + DEFAULT_EXPIRES_IN * 1000
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=dt.timezone.utc)
    return int(expiry.timestamp() * 1000)


async def ensure_valid(
    credential: Optional[Credential],
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    now: Optional[int] = None,
) -> Tuple[Credential, bool]:
    """Return (usable credential, refreshed?). The caller persists it when refreshed."""
    if credential is None or not credential.access_token:
        raise NotAuthenticated()
    now = now_ms() if now is None else now
    if not needs_refresh(credential, now):
        return credential, False

    cid, secret = _oauth_client(client_id, client_secret)
    if not credential.refresh_token:
        logger.info("Access token expired and no refresh token is stored")
        raise AuthExpired()
    try:
        access_token, expiry = await anyio.to_thread.run_sync(
            _refresh_grant, credential.refresh_token, cid, secret
        )
    except GoogleAuthError as exc:
        logger.warning("Token refresh failed", exc_info=exc)
        raise AuthExpired() from exc
    if not access_token:
        raise AuthExpired()

    refreshed = credential.model_copy(update={
        "access_token": access_token,
        "expires_at": _expiry_to_ms(expiry, now_ms()),
    })
    logger.debug("Refreshed access token; new expiry %s", refreshed.expires_at)
    return refreshed, True


class SessionStore:
    """In-process `session_id -> Credential` map with a lock per session."""

    def __init__(self) -> None:
        self._credentials: Dict[str, Credential] = {}
        self._locks: Dict[str, anyio.Lock] = {}

    def get(self, session_id: str) -> Optional[Credential]:
        return self._credentials.get(session_id)

    def put(self, session_id: str, credential: Credential) -> None:
        self._credentials[session_id] = credential

    def drop(self, session_id: str) -> None:
        self._credentials.pop(session_id, None)
        self._locks.pop(session_id, None)

    def status(self, session_id: str) -> Dict[str, Any]:
        credential = self.get(session_id)
        if credential is None:
            return {"isAuthenticated": False}
        return {"isAuthenticated": True, "user": credential.user}

    def _lock_for(self, session_id: str) -> anyio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = anyio.Lock()
        return lock

    async def ensure_valid(
        self,
        session_id: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> Credential:
        if session_id not in self._credentials:
            raise NotAuthenticated()
        # Re-read under the lock: a request that waited sees the credential the
        # first one already refreshed and skips its own grant.
        async with self._lock_for(session_id):
            credential, refreshed = await ensure_valid(
                self.get(session_id), client_id=client_id, client_secret=client_secret
            )
            if refreshed and session_id in self._credentials:
                self._credentials[session_id] = credential
            return credential
