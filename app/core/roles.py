"""
Role Resolver

Turns an identity into an access role and keeps the answer in the
durable cache so a reload can show the right view before sign-in
completes.

Rules (enforced in code):
- Role is a pure function of email: one designated address is the
  team leader, every other address is an editor
- The cached role is valid for a fixed window (24h by default)
- An absent, unreadable, tampered or expired cache entry is a miss;
  neither it nor a failing cache backend is ever surfaced as an error
- Sign-out removes the cache entry
- A cached role published at startup is always superseded by the
  first live identity event

The cache blob is signed (itsdangerous) so an edited entry cannot
grant the team-leader role.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import ValidationError

from app.core.subscriptions import Publisher, Subscription
from app.db.cache import DurableCache
from app.db.config import DEFAULT_ROLE_CACHE_TTL_SECONDS, DEFAULT_TEAM_LEADER_EMAIL, session_secret
from app.schemas import EditorRole, Identity, SessionRole, normalize_email

logger = logging.getLogger(__name__)

ROLE_CACHE_KEY = "user_role_cache"
ROLE_CACHE_TTL = timedelta(seconds=DEFAULT_ROLE_CACHE_TTL_SECONDS)
ROLE_CACHE_SALT = "editdesk-role-cache-v1"


def resolve_role(email: str, team_leader_email: str = DEFAULT_TEAM_LEADER_EMAIL) -> EditorRole:
    """The designated address is the team leader; everyone else edits. Case-insensitive."""
    if normalize_email(email) == normalize_email(team_leader_email):
        return EditorRole.TEAM_LEADER
    return EditorRole.EDITOR


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cache_serializer(secret: Optional[str] = None) -> URLSafeSerializer:
    """Serializer for the signed role cache blob."""
    return URLSafeSerializer(secret_key=secret or session_secret(), salt=ROLE_CACHE_SALT)


@dataclass(frozen=True)
class RoleUpdate:
    """
    What the resolver publishes.

    identity and role are both None after sign-out.
    from_cache marks a provisional value read at startup.
    """
    identity: Optional[Identity]
    role: Optional[EditorRole]
    from_cache: bool = False


class RoleResolver:
    """
    Resolves roles, caches them, and publishes (identity, role) updates.

    Usage:
        resolver = RoleResolver(cache)
        resolver.subscribe(on_update)
        resolver.refresh_from_cache_on_startup()
        resolver.attach(identity_provider)
    """

    def __init__(
        self,
        cache: DurableCache,
        team_leader_email: str = DEFAULT_TEAM_LEADER_EMAIL,
        ttl: timedelta = ROLE_CACHE_TTL,
        clock: Optional[Callable[[], datetime]] = None,
        serializer: Optional[URLSafeSerializer] = None,
    ):
        self._cache = cache
        self._team_leader_email = team_leader_email
        self._ttl = ttl
        self._clock = clock or _utcnow
        self._serializer = serializer or cache_serializer()
        self._updates: Publisher[RoleUpdate] = Publisher("role-updates")
        self._current = RoleUpdate(identity=None, role=None)
        self._live_seen = False

    @property
    def current(self) -> RoleUpdate:
        """The most recently published update."""
        return self._current

    def resolve_role(self, email: str) -> EditorRole:
        return resolve_role(email, self._team_leader_email)

    def subscribe(self, listener: Callable[[RoleUpdate], None]) -> Subscription:
        return self._updates.subscribe(listener)

    def attach(self, identity_provider) -> Subscription:
        """Listen to an identity provider's sign-in/sign-out events."""
        return identity_provider.on_change(self.on_identity_change)

    # ================================================================
    # CACHE
    # ================================================================

    def load_cached_role(self) -> Optional[SessionRole]:
        """
        Read the cached role.

        Returns None if absent, unreadable or expired. Unreadable and
        expired entries are removed.
        """
        try:
            blob = self._cache.get(ROLE_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Error reading role cache: {e}")
            return None

        if not blob:
            return None

        try:
            cached = SessionRole.model_validate(self._serializer.loads(blob))
        except (BadSignature, ValidationError, ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable role cache: {e}")
            self._remove_cached_role()
            return None

        cached_at = cached.cached_at
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)

        if self._clock() - cached_at > self._ttl:
            logger.debug(f"Role cache for {cached.email} expired")
            self._remove_cached_role()
            return None

        return cached

    def _store_cached_role(self, email: str, role: EditorRole) -> None:
        entry = SessionRole(email=email, role=role, cached_at=self._clock())
        try:
            self._cache.set(ROLE_CACHE_KEY, self._serializer.dumps(entry.model_dump(mode="json")))
        except Exception as e:
            logger.warning(f"Error caching role: {e}")

    def _remove_cached_role(self) -> None:
        try:
            self._cache.remove(ROLE_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Error clearing role cache: {e}")

    # ================================================================
    # EVENTS
    # ================================================================

    def refresh_from_cache_on_startup(self) -> Optional[SessionRole]:
        """
        Publish the cached role before the identity provider reports in.

        Skipped once a live identity event has been handled: the live
        value always wins.
        """
        if self._live_seen:
            return None

        cached = self.load_cached_role()
        if cached is not None:
            self._publish(RoleUpdate(
                identity=Identity(email=cached.email),
                role=cached.role,
                from_cache=True,
            ))
        return cached

    def on_identity_change(self, identity: Optional[Identity]) -> None:
        """Handle a sign-in (identity) or sign-out (None) event."""
        self._live_seen = True

        if identity is None:
            self._remove_cached_role()
            logger.info("Signed out")
            self._publish(RoleUpdate(identity=None, role=None))
            return

        role = self.resolve_role(identity.email)
        self._store_cached_role(identity.email, role)
        logger.info(f"Signed in as {identity.email} ({role.value})")
        self._publish(RoleUpdate(identity=identity, role=role))

    def _publish(self, update: RoleUpdate) -> None:
        self._current = update
        self._updates.publish(update)
