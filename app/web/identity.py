"""
Local Identity Provider

Stands in for the hosted sign-in service: it accepts addresses known to
this deployment and emits sign-in / sign-out events.

    provider.on_change(callback)   # callback(Identity) or callback(None)
    provider.sign_in("tarun@mm.com")
    provider.sign_out()
"""

import logging
from typing import Callable, Iterable, Optional

from app.core.subscriptions import Publisher, Subscription
from app.schemas import Identity, normalize_email

logger = logging.getLogger(__name__)


class UnknownIdentityError(Exception):
    """Raised when an address is not allowed to sign in."""
    pass


class LocalIdentityProvider:
    """In-process identity provider restricted to a set of known addresses."""

    def __init__(self, known_emails: Iterable[str]):
        self._known = {normalize_email(e) for e in known_emails}
        self._changes: Publisher[Optional[Identity]] = Publisher("identity")
        self._current: Optional[Identity] = None

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def on_change(self, callback: Callable[[Optional[Identity]], None]) -> Subscription:
        return self._changes.subscribe(callback)

    def sign_in(self, email: str) -> Identity:
        email = normalize_email(email)
        if email not in self._known:
            raise UnknownIdentityError(f"{email or 'empty address'} is not a known user")
        identity = Identity(email=email)
        self._current = identity
        self._changes.publish(identity)
        return identity

    def sign_out(self) -> None:
        self._current = None
        self._changes.publish(None)
