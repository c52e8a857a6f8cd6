"""
Gmail REST helpers over a bearer access token.

    list_emails(token, query=None, max_results=10, client=None) -> list[EmailSummary]
    send_email(token, to, subject, body, client=None) -> dict

list_emails lists message ids (optionally filtered by a Gmail search query)
then fetches From/Subject/Date metadata for each id concurrently; results keep
the order of the listing. send_email submits a base64url-encoded plain-text
RFC 2822 message. Provider errors raise httpx.HTTPStatusError; nothing retries.

If run as a script:
    python agent_gmail.py list --token ACCESS [--query "from:bob"] [--max 10]
    python agent_gmail.py send --token ACCESS --to a@b.com --subject Hi --body Hello
"""
from __future__ import annotations
import os, sys, json, base64, logging, datetime as dt
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import anyio
import httpx
from dotenv import load_dotenv
load_dotenv()

from pydantic import BaseModel, ConfigDict, Field

from agent_http import open_client, get_json, post_json

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
LOCAL_TZ = os.getenv("LOCAL_TZ", "America/Los_Angeles")
METADATA_HEADERS = ["From", "Subject", "Date"]

logger = logging.getLogger(__name__)


class EmailSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    sender: str = Field(default="", alias="from")
    subject: str = ""
    snippet: str = ""
    date: str = ""
    unread: bool = False


def _dry_run() -> bool:
    return os.getenv("DRY_RUN", "0").lower() in {"1", "true", "yes", "on"}


def _header(payload: Dict[str, Any], name: str) -> str:
    for h in payload.get("headers", []) or []:
        if h.get("name") == name:
            return h.get("value") or ""
    return ""


def _display_date(internal_date: Optional[str]) -> str:
    """internalDate (epoch millis as a string) -> 'M/D/YYYY' in LOCAL_TZ."""
    try:
        ms = int(internal_date)
    except (TypeError, ValueError):
        return ""
    d = dt.datetime.fromtimestamp(ms / 1000, tz=ZoneInfo(LOCAL_TZ))
    return f"{d.month}/{d.day}/{d.year}"


def summarize_message(mid: str, msg: Dict[str, Any]) -> EmailSummary:
    payload = msg.get("payload", {}) or {}
    return EmailSummary(
        id=mid,
        sender=_header(payload, "From"),
        subject=_header(payload, "Subject"),
        snippet=msg.get("snippet", "") or "",
        date=_display_date(msg.get("internalDate")),
        unread="UNREAD" in (msg.get("labelIds") or []),
    )


async def list_emails(
    token: str,
    query: Optional[str] = None,
    max_results: int = 10,
    client: Optional[httpx.AsyncClient] = None,
) -> List[EmailSummary]:
    if max_results <= 0:
        raise ValueError("max_results must be positive")
    params: Dict[str, Any] = {"maxResults": max_results}
    if query:
        params["q"] = query
    logger.debug("Listing Gmail messages (q=%r, max=%s)", query, max_results)

    async with open_client(client) as ac:
        listing = await get_json(ac, f"{GMAIL_BASE_URL}/messages", token, params)
        ids = [m["id"] for m in listing.get("messages") or []][:max_results]
        if not ids:
            return []

        results: List[Optional[EmailSummary]] = [None] * len(ids)

        async def fetch(index: int, mid: str) -> None:
            msg = await get_json(
                ac,
                f"{GMAIL_BASE_URL}/messages/{mid}",
                token,
                {"format": "metadata", "metadataHeaders": METADATA_HEADERS},
            )
            results[index] = summarize_message(mid, msg)

        async with anyio.create_task_group() as tg:
            for i, mid in enumerate(ids):
                tg.start_soon(fetch, i, mid)

    return [r for r in results if r is not None]


def build_raw_message(to: str, subject: str, body: str) -> str:
    return "\r\n".join([
        f"To: {to}",
        f"Subject: {subject}",
        "Content-Type: text/plain; charset=utf-8",
        "",
        body,
    ])


def encode_raw(message: str) -> str:
    """Gmail's `raw` field: base64url without padding."""
    encoded = base64.b64encode(message.encode("utf-8")).decode("ascii")
    return encoded.replace("+", "-").replace("/", "_").rstrip("=")


async def send_email(
    token: str,
    to: str,
    subject: str,
    body: str = "",
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    if not to:
        raise ValueError("A recipient is required")
    if _dry_run():
        logger.info("DRY_RUN enabled; skipping send to %s", to)
        return {"id": "dry-run", "threadId": None}

    raw = encode_raw(build_raw_message(to, subject or "", body or ""))
    logger.debug("Sending Gmail message to %s", to)
    async with open_client(client) as ac:
        try:
            return await post_json(ac, f"{GMAIL_BASE_URL}/messages/send", token, {"raw": raw})
        except httpx.HTTPStatusError as exc:
            logger.exception("Failed to send Gmail message to %s", to, exc_info=exc)
            raise


# ---------------- CLI -----------------
def _usage():
    print("Usage:")
    print('  python agent_gmail.py list --token ACCESS [--query "from:bob"] [--max N]')
    print("  python agent_gmail.py send --token ACCESS --to EMAIL --subject S --body B")


def main():
    if len(sys.argv) < 2:
        _usage(); sys.exit(1)
    cmd = sys.argv[1]
    args = sys.argv[2:]

    def get_opt(flag: str, default=None):
        if flag in args:
            i = args.index(flag)
            if i + 1 < len(args):
                return args[i + 1]
        return default

    token = get_opt("--token", os.getenv("GOOGLE_ACCESS_TOKEN"))
    if not token:
        _usage(); sys.exit(2)
    if cmd == "list":
        maxn = int(get_opt("--max", "10"))
        emails = anyio.run(list_emails, token, get_opt("--query"), maxn)
        print(json.dumps([e.model_dump(by_alias=True) for e in emails], indent=2))
    elif cmd == "send":
        to = get_opt("--to")
        if not to:
            _usage(); sys.exit(2)
        res = anyio.run(send_email, token, to, get_opt("--subject", ""), get_opt("--body", ""))
        print(json.dumps(res, indent=2))
    else:
        _usage(); sys.exit(2)


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    main()
