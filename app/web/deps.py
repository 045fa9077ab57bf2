"""
Dependency injection for desk routes.

Gets the device's desk session from the cookie and checks the live role.
"""

from fastapi import HTTPException, Request

from app.schemas import EditorRole
from app.web.auth import SESSION_COOKIE, read_session_cookie
from app.web.workspace import DeskSession, Workspace


def get_workspace(request: Request) -> Workspace:
    return request.app.state.workspace


def get_device_session(request: Request):
    """The device's session if the cookie names one, else None."""
    device_id = read_session_cookie(request.cookies.get(SESSION_COOKIE, ""))
    if not device_id:
        return None
    return get_workspace(request).get_session(device_id)


def require_signed_in(request: Request) -> DeskSession:
    """Require a live (not cache-provisional) sign-in."""
    session = get_device_session(request)
    if session is None or not session.signed_in:
        raise HTTPException(status_code=401, detail="Not signed in")
    return session


def require_team_leader(request: Request) -> DeskSession:
    session = require_signed_in(request)
    if session.role != EditorRole.TEAM_LEADER:
        raise HTTPException(status_code=403, detail="Team leader role required")
    return session
