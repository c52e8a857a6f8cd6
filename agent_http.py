"""
Small httpx helpers shared by the Gmail and Calendar clients.

Every outbound call carries `Authorization: Bearer <token>` and a bounded
timeout (REQUEST_TIMEOUT seconds). Non-2xx responses raise
httpx.HTTPStatusError via raise_for_status(); timeouts raise
httpx.TimeoutException. Callers may pass their own AsyncClient (tests use
httpx.MockTransport); otherwise a short-lived one is opened per operation.
"""
from __future__ import annotations
import os, contextlib
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from dotenv import load_dotenv
load_dotenv()

REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "15"))


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@contextlib.asynccontextmanager
async def open_client(client: Optional[httpx.AsyncClient] = None) -> AsyncIterator[httpx.AsyncClient]:
    """Yield `client` untouched, or a fresh AsyncClient closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as ac:
        yield ac


async def get_json(ac: httpx.AsyncClient, url: str, token: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    r = await ac.get(url, params=params, headers=bearer(token), timeout=REQUEST_TIMEOUT)
    r.raise_for_status()
    return r.json()


async def post_json(
    ac: httpx.AsyncClient,
    url: str,
    token: str,
    payload: Dict[str, Any],
    params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    r = await ac.post(url, params=params, json=payload, headers=bearer(token), timeout=REQUEST_TIMEOUT)
    r.raise_for_status()
    return r.json()
