from __future__ import annotations
import os, logging, datetime as dt
from typing import Any, Dict, Optional

# Google answers with its own scope ordering (and adds openid).
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

import agent_oauth as oauth
from agent_credentials import Credential, OAuthConfigError, SessionStore
from agent_router import Dispatcher

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


class CallbackRequest(BaseModel):
    code: str


class ChatTokens(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    user: Optional[Dict[str, Any]] = None

    def to_credential(self) -> Optional[Credential]:
        if not self.access_token:
            return None
        # no expiry from the client means no refresh attempt
        return Credential(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at or 0,
            user=self.user,
        )


class ChatRequest(BaseModel):
    message: str = ""
    tokens: Optional[ChatTokens] = Field(default=None, description="stateless mode: client-held credential")


app = FastAPI(title="Mail + Calendar Agent API", version="0.1.0")
app.state.store = SessionStore()
app.state.dispatcher = Dispatcher(store=app.state.store)


def _redirect_uri(request: Request) -> str:
    return oauth.OAUTH_REDIRECT_URI or str(request.base_url).rstrip("/")


@app.get("/")
def root():
    return RedirectResponse(url="/docs", status_code=302)


@app.get("/api/health")
def health():
    return {"ok": True, "time": dt.datetime.now(dt.timezone.utc).isoformat()}


@app.get("/api/auth/url")
def auth_url(request: Request):
    try:
        return {"url": oauth.authorization_url(_redirect_uri(request))}
    except OAuthConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/auth/callback")
async def auth_callback(
    req: CallbackRequest,
    request: Request,
    session_id: str = Header(default=DEFAULT_SESSION_ID, alias="X-Session-Id"),
):
    try:
        credential = await oauth.complete_login(req.code, _redirect_uri(request))
    except OAuthConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except oauth.OAuthExchangeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("OAuth callback failed")
        raise HTTPException(status_code=500, detail=str(e))
    request.app.state.store.put(session_id, credential)
    return {"success": True, "user": credential.user, "tokens": credential.model_dump()}


@app.get("/api/auth/status")
def auth_status(request: Request, session_id: str = Header(default=DEFAULT_SESSION_ID, alias="X-Session-Id")):
    return request.app.state.store.status(session_id)


@app.post("/api/auth/logout")
def auth_logout(request: Request, session_id: str = Header(default=DEFAULT_SESSION_ID, alias="X-Session-Id")):
    request.app.state.store.drop(session_id)
    return {"success": True}


@app.post("/api/chat")
async def chat(
    req: ChatRequest,
    request: Request,
    session_id: str = Header(default=DEFAULT_SESSION_ID, alias="X-Session-Id"),
):
    dispatcher: Dispatcher = request.app.state.dispatcher
    try:
        if req.tokens is not None:
            result = await dispatcher.handle(req.message, req.tokens.to_credential())
        else:
            result = await dispatcher.handle_session(req.message, session_id)
    except OAuthConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return result.to_payload()
