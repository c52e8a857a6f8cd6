#!/usr/bin/env python3
"""
Natural-language router for Gmail + Google Calendar.
- Checks/refreshes the Google credential before anything else
- Resolves intent (OpenAI JSON intent, keyword rules as fallback)
- Calls the matching Gmail/Calendar helper and shapes a ChatResult

Examples:
  python agent_router.py "show my inbox" --token ya29... --json
  python agent_router.py "what's on my calendar tomorrow?" --token ya29... --refresh 1//0g... --expires-at 1
"""
from __future__ import annotations
import os, sys, json, logging, datetime as dt
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import anyio
import httpx
from dotenv import load_dotenv
load_dotenv()

from pydantic import BaseModel, ConfigDict, Field

import agent_gmail as gmail
import agent_calendar as cal
from agent_credentials import (
    AuthError, OAuthConfigError, Credential, SessionStore, ensure_valid,
)
from agent_intent import IntentResolver, ResolvedIntent, build_resolver

logger = logging.getLogger(__name__)

LOCAL_TZ = os.getenv("LOCAL_TZ", "America/Los_Angeles")
DEFAULT_EMAIL_COUNT = 5


# ---------- Schemas ---------
class ChatData(BaseModel):
    emails: Optional[List[gmail.EmailSummary]] = None
    events: Optional[List[cal.CalendarEventSummary]] = None


class ChatResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: Optional[str] = None
    data: ChatData = Field(default_factory=ChatData)
    error: Optional[str] = None
    refreshed_credential: Optional[Credential] = Field(default=None, alias="newTokens")

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude_none=True)
        payload.setdefault("data", {})
        return payload


class ActionExecutionFailure(RuntimeError):
    pass


class MissingParameters(ValueError):
    """Required fields absent; str(exc) is the clarifying question."""


def _require(params: Dict[str, Any], names: List[str], question: str) -> None:
    if any(not params.get(n) for n in names):
        raise MissingParameters(question)


def _detail(exc: BaseException) -> str:
    # task groups wrap the first real failure
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return str(exc) or exc.__class__.__name__


class Dispatcher:
    """credential gate -> resolve -> Gmail/Calendar call -> ChatResult."""

    def __init__(
        self,
        resolver: Optional[IntentResolver] = None,
        store: Optional[SessionStore] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        tz: str = LOCAL_TZ,
    ):
        self.resolver = resolver or build_resolver()
        self.store = store if store is not None else SessionStore()
        self.client_id = client_id
        self.client_secret = client_secret
        self.http_client = http_client
        self.tz = tz
        self._actions: Dict[str, Callable[[ResolvedIntent, str], Awaitable[ChatResult]]] = {
            "list_emails": self._list_emails,
            "send_email": self._send_email,
            "list_events": self._list_events,
            "create_event": self._create_event,
        }

    def now(self) -> dt.datetime:
        return dt.datetime.now(ZoneInfo(self.tz))

    async def handle(self, message: str, credential: Optional[Credential]) -> ChatResult:
        """Stateless entry: the caller owns the credential and stores newTokens."""
        try:
            credential, refreshed = await ensure_valid(
                credential, client_id=self.client_id, client_secret=self.client_secret
            )
        except OAuthConfigError:
            raise
        except AuthError as exc:
            return ChatResult(error=str(exc))
        result = await self._run(message, credential.access_token)
        if refreshed:
            result.refreshed_credential = credential
        return result

    async def handle_session(self, message: str, session_id: str) -> ChatResult:
        """Stored-session entry: refreshed credentials are written back to the store."""
        try:
            credential = await self.store.ensure_valid(
                session_id, client_id=self.client_id, client_secret=self.client_secret
            )
        except OAuthConfigError:
            raise
        except AuthError as exc:
            return ChatResult(error=str(exc))
        return await self._run(message, credential.access_token)

    async def _run(self, message: str, token: str) -> ChatResult:
        intent = await self.resolver.resolve(message, self.now())
        logger.debug("Resolved intent %s params=%s", intent.action, sorted(intent.params))
        action = self._actions.get(intent.action)
        if action is None:
            return ChatResult(response=intent.response)
        try:
            return await action(intent, token)
        except MissingParameters as exc:
            return ChatResult(response=str(exc))
        except ActionExecutionFailure as exc:
            logger.exception("Action %s failed", intent.action)
            return ChatResult(error=f"Failed to process: {exc}")

    async def _call(self, fn, *args, **kwargs):
        try:
            return await fn(*args, client=self.http_client, **kwargs)
        except Exception as exc:
            raise ActionExecutionFailure(_detail(exc)) from exc

    async def _list_emails(self, intent: ResolvedIntent, token: str) -> ChatResult:
        params = intent.params
        try:
            count = int(params.get("maxResults") or DEFAULT_EMAIL_COUNT)
        except (TypeError, ValueError):
            count = DEFAULT_EMAIL_COUNT
        emails = await self._call(gmail.list_emails, token, params.get("query") or None, max(count, 1))
        response = intent.response if emails else "No emails found matching your query."
        return ChatResult(response=response, data=ChatData(emails=emails))

    async def _send_email(self, intent: ResolvedIntent, token: str) -> ChatResult:
        params = intent.params
        _require(params, ["to", "subject"], "Please specify who to send the email to and the subject.")
        await self._call(gmail.send_email, token, params["to"], params["subject"], params.get("body") or "")
        return ChatResult(response=f"Email sent to {params['to']}!")

    async def _list_events(self, intent: ResolvedIntent, token: str) -> ChatResult:
        params = intent.params
        events = await self._call(cal.list_events, token, params.get("timeMin"), params.get("timeMax"))
        response = intent.response if events else "No upcoming events found."
        return ChatResult(response=response, data=ChatData(events=events))

    async def _create_event(self, intent: ResolvedIntent, token: str) -> ChatResult:
        params = intent.params
        _require(params, ["summary", "start", "end"], "Please specify the meeting title, start time, and end time.")
        await self._call(
            cal.create_event, token, params["summary"], params["start"], params["end"],
            params.get("attendees"), params.get("description"),
        )
        return ChatResult(response=f'Created event: "{params["summary"]}"')


def handle_structured(nl: str, credential: Optional[Credential], dispatcher: Optional[Dispatcher] = None) -> Dict[str, Any]:
    '''Run one message synchronously and return the JSON-ready ChatResult.'''
    dispatcher = dispatcher or Dispatcher()
    return anyio.run(dispatcher.handle, nl, credential).to_payload()


def handle(nl: str, credential: Optional[Credential]) -> str:
    payload = handle_structured(nl, credential)
    return payload.get("error") or payload.get("response") or ""


# CLI
def _usage():
    print('Usage: python agent_router.py "your request here" [--token ACCESS] [--refresh REFRESH] [--expires-at MS] [--json]')


def main():
    if len(sys.argv) < 2:
        _usage(); sys.exit(1)
    nl = sys.argv[1]
    args = sys.argv[2:]
    as_json = False
    if "--json" in args:
        as_json = True
        args = [a for a in args if a != "--json"]

    def get_opt(flag, default=None):
        if flag in args:
            i = args.index(flag)
            if i + 1 < len(args): return args[i + 1]
        return default

    token = get_opt("--token", os.getenv("GOOGLE_ACCESS_TOKEN"))
    credential = None
    if token:
        # without an explicit expiry assume the token is fresh for an hour
        default_expiry = str(int(dt.datetime.now(dt.timezone.utc).timestamp() * 1000) + 3_600_000)
        credential = Credential(
            access_token=token,
            refresh_token=get_opt("--refresh", os.getenv("GOOGLE_REFRESH_TOKEN")),
            expires_at=int(get_opt("--expires-at", default_expiry)),
        )
    if as_json:
        print(json.dumps(handle_structured(nl, credential), indent=2, ensure_ascii=False))
    else:
        print(handle(nl, credential))


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    main()
