"""
Device cookies for the desk.

Each browser gets a signed device cookie (itsdangerous). The device id
picks the browser's own slice of the durable cache and its own session
(role resolver + aggregation engine), the way local storage belongs to
one browser profile.

The cookie names a browser, not a login: signing out keeps it.
"""

import secrets
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from app.db.config import is_production, session_secret


SESSION_COOKIE = "ed_device"
COOKIE_MAX_AGE = 86400 * 365
COOKIE_SALT = "editdesk-device-v1"


def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(secret_key=session_secret(), salt=COOKIE_SALT)


def new_device_id() -> str:
    return secrets.token_urlsafe(16)


def create_session_cookie(device_id: str) -> str:
    return _serializer().dumps({"d": device_id})


def read_session_cookie(cookie_value: str) -> Optional[str]:
    """The device id, or None for a missing or tampered cookie."""
    if not cookie_value:
        return None
    try:
        payload = _serializer().loads(cookie_value)
        return str(payload["d"])
    except (BadSignature, KeyError, TypeError):
        return None


def set_session_cookie_response(resp, device_id: str):
    """Attach the device cookie; strict and HTTPS-only in production."""
    production = is_production()
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_cookie(device_id),
        max_age=COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        secure=production,
        samesite="strict" if production else "lax",
    )
    return resp
