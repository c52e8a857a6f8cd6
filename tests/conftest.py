"""Shared pytest fixtures for the mail/calendar agent tests.

Provides credential fixtures, an httpx MockTransport-backed client that
records every request, and a stand-in for the OpenAI async client.
"""

import json
from types import SimpleNamespace
from typing import Any, Callable, Dict, List

import httpx
import pytest

from agent_credentials import Credential, now_ms


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# =============================================================================
# Credential Fixtures
# =============================================================================


@pytest.fixture
def fresh_credential() -> Credential:
    """Credential valid for another hour."""
    return Credential(
        access_token="test_access_token",
        refresh_token="test_refresh_token",
        expires_at=now_ms() + 3_600_000,
    )


@pytest.fixture
def expiring_credential() -> Credential:
    """Credential inside the 60s refresh window."""
    return Credential(
        access_token="stale_access_token",
        refresh_token="test_refresh_token",
        expires_at=now_ms() + 30_000,
    )


# =============================================================================
# HTTP Fixtures
# =============================================================================


class RecordingTransport:
    """Routes requests to a handler and keeps them for assertions."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def make_http():
    """Build (client, transport) from a request handler."""

    def _make(handler: Callable[[httpx.Request], httpx.Response]):
        transport = RecordingTransport(handler)
        client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
        return client, transport

    return _make


def gmail_handler(messages: Dict[str, Dict[str, Any]], listing: List[str]) -> Callable[[httpx.Request], httpx.Response]:
    """Fake Gmail: list returns `listing` ids, get returns `messages[id]`."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/messages/send"):
            return httpx.Response(200, json={"id": "sent1", "threadId": "t1"})
        if path.endswith("/messages"):
            body = {"messages": [{"id": i} for i in listing]} if listing else {"resultSizeEstimate": 0}
            return httpx.Response(200, json=body)
        mid = path.rsplit("/", 1)[-1]
        return httpx.Response(200, json=messages[mid])

    return handler


def gmail_message(mid: str, sender: str, subject: str, unread: bool = False) -> Dict[str, Any]:
    return {
        "id": mid,
        "snippet": f"snippet {mid}",
        "internalDate": "1704067200000",
        "labelIds": ["INBOX", "UNREAD"] if unread else ["INBOX"],
        "payload": {
            "headers": [
                {"name": "From", "value": sender},
                {"name": "Subject", "value": subject},
                {"name": "Date", "value": "Mon, 1 Jan 2024 00:00:00 +0000"},
            ]
        },
    }


# =============================================================================
# OpenAI Stand-in
# =============================================================================


class FakeOpenAI:
    """Mimics AsyncOpenAI().chat.completions.create for intent tests."""

    def __init__(self, content: Any = None, error: Exception = None):
        self.content = content
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        content = self.content if isinstance(self.content, str) else json.dumps(self.content)
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])
