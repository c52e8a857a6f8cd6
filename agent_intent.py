"""
Turn a chat message into a ResolvedIntent {action, params, response}.

- OpenAIResolver asks the chat-completion API for a strict JSON intent.
- KeywordResolver is the deterministic fallback; it only ever produces the
  read actions (list_emails, list_events) or `none`.
- FallbackResolver chains them: any LLM transport/parse failure is logged and
  the keyword result is returned instead.

build_resolver() picks the LLM chain when OPENAI_API_KEY is set.
"""
from __future__ import annotations
import os, abc, json, logging, re, datetime as dt
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
load_dotenv()

from pydantic import BaseModel, Field, ValidationError, field_validator
from openai import AsyncOpenAI

from agent_http import REQUEST_TIMEOUT
from agent_calendar import iso_utc

logger = logging.getLogger(__name__)

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

Action = Literal["list_emails", "send_email", "list_events", "create_event", "none"]

EMAIL_WORDS = ("email", "inbox", "mail")
CALENDAR_WORDS = ("calendar", "schedule", "event", "meeting")

HELP_MESSAGE = """I can help you with:
- View emails: "Show my latest emails" or "Search emails from John"
- View calendar: "What's on my calendar today?" or "Show my schedule this week"
- Send email: "Send an email to [email] about [topic]"
- Create event: "Schedule a meeting tomorrow at 2pm"

What would you like to do?"""


class IntentResolutionFailure(RuntimeError):
    pass


class ResolvedIntent(BaseModel):
    action: Action
    params: Dict[str, Any] = Field(default_factory=dict)
    response: str = ""

    @field_validator("params", mode="before")
    @classmethod
    def _params_default(cls, v):
        return {} if v is None else v

    @field_validator("response", mode="before")
    @classmethod
    def _response_default(cls, v):
        return "" if v is None else str(v)


def _ensure_list(x) -> Optional[List[str]]:
    """Normalize input into a list of strings."""
    if x is None:
        return None
    if isinstance(x, list):
        return [s.strip() for s in x if s and isinstance(s, str)]
    if isinstance(x, str):
        # split only on commas/semicolons so "Name <email@x.com>" stays intact
        return [s.strip() for s in re.split(r'[;,]+', x.strip()) if s.strip()]
    return [str(x)]


# ---------- Keyword path ----------
def _end_of_day(moment: dt.datetime) -> dt.datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=999000)


def keyword_intent(message: str, now: dt.datetime) -> ResolvedIntent:
    """Deterministic parse. Email words win over calendar words."""
    text = message if isinstance(message, str) else str(message or "")
    lower = text.lower()

    if any(w in lower for w in EMAIL_WORDS):
        match = re.search(r"from\s+(\S+)", text, flags=re.IGNORECASE)
        if match:
            sender = match.group(1)
            return ResolvedIntent(
                action="list_emails",
                params={"query": f"from:{sender}"},
                response=f"Searching for emails from {sender}...",
            )
        return ResolvedIntent(action="list_emails", params={}, response="Here are your latest emails:")

    if any(w in lower for w in CALENDAR_WORDS):
        time_min = now
        time_max: Optional[dt.datetime] = None
        if "today" in lower:
            time_max = _end_of_day(now)
        elif "week" in lower:
            time_max = now + dt.timedelta(days=7)
        elif "tomorrow" in lower:
            time_min = (now + dt.timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
            time_max = _end_of_day(time_min)

        params: Dict[str, Any] = {"timeMin": iso_utc(time_min)}
        if time_max is not None:
            params["timeMax"] = iso_utc(time_max)
        if "today" in lower:
            response = "Here's your schedule for today:"
        elif "tomorrow" in lower:
            response = "Here's your schedule for tomorrow:"
        else:
            response = "Here are your upcoming events:"
        return ResolvedIntent(action="list_events", params=params, response=response)

    return ResolvedIntent(action="none", params={}, response=HELP_MESSAGE)


# ---------- LLM path ----------
def build_system_prompt(now: dt.datetime) -> str:
    return f"""You are an AI assistant that helps users manage their email and calendar.
You have access to the following functions:
- list_emails(query?: string, maxResults?: number): List/search emails (query uses Gmail search syntax)
- send_email(to: string, subject: string, body: string): Send an email
- list_events(timeMin?: string, timeMax?: string): List calendar events
- create_event(summary: string, start: string, end: string, attendees?: string[], description?: string): Create calendar event

Based on the user's message, determine what action to take and extract the parameters.
Respond with JSON in this format:
{{
  "action": "list_emails" | "send_email" | "list_events" | "create_event" | "none",
  "params": {{ ... }},
  "response": "Your friendly response to the user"
}}

Never invent email addresses. If a required value is unknown, leave it out of params.
For dates, use ISO format. Current date: {now.isoformat()}
If the user asks something you can't help with, set action to "none"."""


def intent_from_payload(data: Any) -> ResolvedIntent:
    if not isinstance(data, dict):
        raise IntentResolutionFailure("LLM intent is not a JSON object")
    try:
        intent = ResolvedIntent.model_validate(data)
    except ValidationError as exc:
        raise IntentResolutionFailure(f"LLM intent did not validate: {exc}") from exc

    params = dict(intent.params)
    if "attendees" in params:
        params["attendees"] = _ensure_list(params["attendees"]) or None
    if isinstance(params.get("to"), list):
        params["to"] = ", ".join(_ensure_list(params["to"]) or []) or None
    return intent.model_copy(update={"params": params})


class IntentResolver(abc.ABC):
    """Common capability: resolve(message, now) -> ResolvedIntent."""

    @abc.abstractmethod
    async def resolve(self, message: str, now: dt.datetime) -> ResolvedIntent:
        ...


class KeywordResolver(IntentResolver):
    async def resolve(self, message: str, now: dt.datetime) -> ResolvedIntent:
        return keyword_intent(message, now)


class OpenAIResolver(IntentResolver):
    def __init__(self, api_key: Optional[str] = None, model: str = OPENAI_MODEL, client: Any = None):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=REQUEST_TIMEOUT)

    async def resolve(self, message: str, now: dt.datetime) -> ResolvedIntent:
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": build_system_prompt(now)},
                    {"role": "user", "content": message},
                ],
                response_format={"type": "json_object"},
            )
            raw = resp.choices[0].message.content
            data = json.loads(raw)
        except Exception as exc:
            raise IntentResolutionFailure(f"LLM intent call failed: {exc}") from exc
        return intent_from_payload(data)


class FallbackResolver(IntentResolver):
    def __init__(self, primary: IntentResolver, fallback: Optional[IntentResolver] = None):
        self.primary = primary
        self.fallback = fallback or KeywordResolver()

    async def resolve(self, message: str, now: dt.datetime) -> ResolvedIntent:
        try:
            return await self.primary.resolve(message, now)
        except IntentResolutionFailure as exc:
            logger.warning("LLM intent parsing failed; using keyword rules", exc_info=exc)
        return await self.fallback.resolve(message, now)


def build_resolver(api_key: Optional[str] = None) -> IntentResolver:
    key = OPENAI_API_KEY if api_key is None else api_key
    if key:
        return FallbackResolver(OpenAIResolver(api_key=key))
    return KeywordResolver()
