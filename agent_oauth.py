"""
Google OAuth web flow helpers (consent URL + authorization-code exchange).

Scope set covers Gmail read/send/compose, Calendar read/events and the basic
profile so the UI can show who is connected. exchange_code() returns a
Credential ready for SessionStore.put() (or for the client to keep).
"""
from __future__ import annotations
import os, logging
from typing import Any, Dict, Optional

import anyio
import httpx
from dotenv import load_dotenv
load_dotenv()

from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

import agent_credentials as creds
from agent_credentials import Credential, OAuthConfigError
from agent_http import open_client, get_json

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
OAUTH_REDIRECT_URI = os.getenv("OAUTH_REDIRECT_URI")

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.compose",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

logger = logging.getLogger(__name__)


class OAuthExchangeError(RuntimeError):
    pass


def _flow(redirect_uri: str, require_secret: bool = True) -> Flow:
    client_id = creds.GOOGLE_CLIENT_ID
    client_secret = creds.GOOGLE_CLIENT_SECRET
    if not client_id or (require_secret and not client_secret):
        raise OAuthConfigError("Google OAuth not configured" if not client_id else "OAuth not configured")
    config = {
        "web": {
            "client_id": client_id,
            "client_secret": client_secret or "",
            "auth_uri": GOOGLE_AUTH_URL,
            "token_uri": creds.GOOGLE_TOKEN_URL,
            "redirect_uris": [redirect_uri],
        }
    }
    return Flow.from_client_config(
        config, scopes=SCOPES, redirect_uri=redirect_uri, autogenerate_code_verifier=False
    )


def authorization_url(redirect_uri: str) -> str:
    url, _state = _flow(redirect_uri, require_secret=False).authorization_url(
        access_type="offline", prompt="consent"
    )
    return url


def exchange_code(code: str, redirect_uri: str) -> Credential:
    """Blocking code -> token exchange. Raises OAuthExchangeError on a provider error."""
    flow = _flow(redirect_uri)
    try:
        token = flow.fetch_token(code=code)
    except OAuth2Error as exc:
        raise OAuthExchangeError(exc.description or exc.error) from exc
    expires_in = int(token.get("expires_in") or creds.DEFAULT_EXPIRES_IN)
    return Credential(
        access_token=token["access_token"],
        refresh_token=token.get("refresh_token"),
        expires_at=creds.now_ms() + expires_in * 1000,
    )


async def fetch_user(access_token: str, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    async with open_client(client) as ac:
        info = await get_json(ac, GOOGLE_USERINFO_URL, access_token)
    return {"email": info.get("email"), "name": info.get("name"), "picture": info.get("picture")}


async def complete_login(code: str, redirect_uri: str, client: Optional[httpx.AsyncClient] = None) -> Credential:
    credential = await anyio.to_thread.run_sync(exchange_code, code, redirect_uri)
    user = await fetch_user(credential.access_token, client=client)
    logger.info("Connected Google account %s", user.get("email"))
    return credential.model_copy(update={"user": user})
