"""
Session Controller

Wires the Role Resolver's output into the Aggregation Engine.

    identity provider -> RoleResolver -> SessionController -> AggregationEngine

Whenever the live (identity, role) pair changes, the controller stops the
engine (cancelling its subscription) and only then starts it again for the
new pair. Both calls are synchronous, so there is no window in which two
subscriptions are open.

Provisional roles read from cache at startup are exposed for display but
do not start the engine; it waits for a live identity.
"""

import logging
from typing import Optional

from app.core.engine import AggregationEngine
from app.core.roles import RoleResolver, RoleUpdate
from app.core.subscriptions import Subscription
from app.schemas import EditorRole, Identity

logger = logging.getLogger(__name__)


class SessionController:
    """Keeps one engine bound to the current signed-in identity."""

    def __init__(self, resolver: RoleResolver, engine: AggregationEngine):
        self._resolver = resolver
        self._engine = engine
        self._bound: Optional[tuple[Identity, EditorRole]] = None
        self._subscription: Optional[Subscription] = resolver.subscribe(self._on_role_update)

    @property
    def engine(self) -> AggregationEngine:
        return self._engine

    @property
    def resolver(self) -> RoleResolver:
        return self._resolver

    @property
    def identity(self) -> Optional[Identity]:
        return self._resolver.current.identity

    @property
    def role(self) -> Optional[EditorRole]:
        return self._resolver.current.role

    @property
    def bound(self) -> Optional[tuple[Identity, EditorRole]]:
        """The (identity, role) the engine is currently running for."""
        return self._bound

    def _on_role_update(self, update: RoleUpdate) -> None:
        if update.from_cache:
            logger.debug(f"Provisional role {update.role} from cache; waiting for sign-in")
            return

        target = None
        if update.identity is not None and update.role is not None:
            target = (update.identity, update.role)

        if target == self._bound:
            return

        # Cancel the old subscription before opening the new one
        self._engine.stop()
        self._bound = None

        if target is not None:
            identity, role = target
            self._engine.start(role, identity)
            self._bound = target

    def close(self) -> None:
        """Detach from the resolver and stop the engine."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._engine.stop()
        self._bound = None
