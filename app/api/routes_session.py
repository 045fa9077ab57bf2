"""
Session API Routes

Sign-in / sign-out through the local identity provider, and "who am I".

A device that has signed in before gets its cached role back from
/api/session/me straight away (provisional), before it signs in again.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel, Field

from app.observability import get_logger, get_metrics
from app.web.auth import SESSION_COOKIE, read_session_cookie, set_session_cookie_response
from app.web.deps import get_device_session, get_workspace
from app.web.identity import UnknownIdentityError


router = APIRouter(prefix="/api/session", tags=["Session API"])

logger = get_logger(__name__)


# ============================================================
# Request/Response Models
# ============================================================

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3)


class SessionResponse(BaseModel):
    authenticated: bool
    email: Optional[str] = None
    role: Optional[str] = None
    provisional: bool = False
    is_team_leader: bool = False
    is_editor: bool = False


def _describe(session) -> SessionResponse:
    if session is None:
        return SessionResponse(authenticated=False)
    update = session.resolver.current
    role = update.role.value if update.role else None
    return SessionResponse(
        authenticated=session.signed_in,
        email=update.identity.email if update.identity else None,
        role=role,
        provisional=update.from_cache,
        is_team_leader=role == "team-leader",
        is_editor=role == "editor",
    )


# ============================================================
# Endpoints
# ============================================================

@router.post("/login", response_model=SessionResponse)
async def login(request: Request, response: Response, body: LoginRequest):
    """Sign in with an address known to this desk."""
    workspace = get_workspace(request)
    existing = get_device_session(request)
    session = workspace.open_session(existing.device_id if existing else None)

    try:
        session.sign_in(body.email)
    except UnknownIdentityError:
        logger.warning("Sign-in refused", email=body.email)
        if existing is None:
            workspace.close_session(session.device_id)
        raise HTTPException(status_code=401, detail="Unknown user")

    get_metrics().sign_ins += 1
    set_session_cookie_response(response, session.device_id)
    return _describe(session)


@router.post("/logout", response_model=SessionResponse)
async def logout(request: Request):
    """
    Sign out and close the device's session.

    Clears the cached role and cancels the session's order subscription.
    The device cookie stays.
    """
    session = get_device_session(request)
    if session is None:
        return _describe(None)
    session.sign_out()
    described = _describe(session)
    get_workspace(request).close_session(session.device_id)
    return described


@router.get("/me", response_model=SessionResponse)
async def me(request: Request):
    """Current identity and role, or the cached role if not signed in yet."""
    existing = get_device_session(request)
    if existing is not None:
        return _describe(existing)

    # First contact from this device (or the process restarted):
    # open its session so a cached role can be served.
    device_id = read_session_cookie(request.cookies.get(SESSION_COOKIE, ""))
    if device_id is None:
        return _describe(None)

    workspace = get_workspace(request)
    session = workspace.open_session(device_id)
    if session.resolver.current.identity is None:
        # Nothing cached for this device; keep no session for it
        workspace.close_session(device_id)
        return _describe(None)
    return _describe(session)
