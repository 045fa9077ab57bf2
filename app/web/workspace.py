"""
Shared Workspace

Holds the process-wide pieces (configuration, order store, backing cache)
and one DeskSession per browser device.

A DeskSession is the server-side twin of one open browser:

    LocalIdentityProvider -> RoleResolver -> SessionController -> AggregationEngine
                                   |                                    |
                                   +---- NamespacedCache(device) -------+

SEEDING:
- Demo orders are loaded only if the store is empty
- Auto-seeding is DISABLED by default
- Set EDITDESK_AUTO_SEED=1 to enable it
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Optional

from app.core import AggregationEngine, RoleResolver, SessionController
from app.db.cache import DurableCache, InMemoryCache, JsonFileCache, NamespacedCache
from app.db.config import CacheDriver, DeskConfig
from app.db.orders import OrderStore
from app.schemas import EditorRole, Identity, Order, OrderStatus
from app.web.auth import new_device_id
from app.web.identity import LocalIdentityProvider

logger = logging.getLogger(__name__)


@dataclass
class DeskSession:
    """Everything one browser device needs."""
    device_id: str
    identity_provider: LocalIdentityProvider
    resolver: RoleResolver
    engine: AggregationEngine
    controller: SessionController

    @property
    def identity(self) -> Optional[Identity]:
        return self.controller.identity

    @property
    def role(self) -> Optional[EditorRole]:
        return self.controller.role

    @property
    def signed_in(self) -> bool:
        update = self.resolver.current
        return update.identity is not None and not update.from_cache

    def sign_in(self, email: str) -> Identity:
        return self.identity_provider.sign_in(email)

    def sign_out(self) -> None:
        self.identity_provider.sign_out()

    def close(self) -> None:
        self.controller.close()


def create_cache(config: DeskConfig) -> DurableCache:
    """Create the backing durable cache for the configured driver."""
    if config.cache_driver == CacheDriver.FILE:
        logger.info(f"Using file cache at {config.cache_path}")
        return JsonFileCache(config.cache_path)
    logger.info("Using in-memory cache (no persistence)")
    return InMemoryCache()


class Workspace:
    """
    Process-wide desk state.

    Sessions are closed on sign-out and, lazily, once unused for
    config.session_idle_seconds. Closing a session stops its engine,
    which cancels its order subscription.
    """

    def __init__(
        self,
        config: DeskConfig,
        orders: Optional[OrderStore] = None,
        cache: Optional[DurableCache] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.orders = orders or OrderStore(roster=config.roster)
        self.cache = cache or create_cache(config)
        self._clock = clock or time.monotonic
        self._sessions: dict[str, DeskSession] = {}
        self._last_seen: dict[str, float] = {}
        self._lock = Lock()

    def sessions(self) -> list[DeskSession]:
        with self._lock:
            return list(self._sessions.values())

    def get_session(self, device_id: str) -> Optional[DeskSession]:
        """The device's open session, or None. Counts as activity."""
        with self._lock:
            idle = self._pop_idle()
            session = self._sessions.get(device_id)
            if session is not None:
                self._last_seen[device_id] = self._clock()
        self._close_all(idle)
        return session

    def open_session(self, device_id: Optional[str] = None) -> DeskSession:
        """Get the device's session, creating it (and its device id) if needed."""
        with self._lock:
            idle = self._pop_idle()
            session = self._sessions.get(device_id) if device_id else None
            if session is None:
                device_id = device_id or new_device_id()
                session = self._build_session(device_id)
                self._sessions[device_id] = session
                logger.info(f"Opened desk session {device_id[:8]}")
            self._last_seen[device_id] = self._clock()
        self._close_all(idle)
        return session

    def close_session(self, device_id: str) -> bool:
        """Close and forget one device's session. False if it was not open."""
        with self._lock:
            session = self._sessions.pop(device_id, None)
            self._last_seen.pop(device_id, None)
        if session is None:
            return False
        session.close()
        logger.info(f"Closed desk session {device_id[:8]}")
        return True

    def evict_idle(self) -> int:
        """Close every session unused for longer than the idle window."""
        with self._lock:
            idle = self._pop_idle()
        self._close_all(idle)
        return len(idle)

    def _pop_idle(self) -> list[DeskSession]:
        # Caller holds self._lock
        cutoff = self._clock() - self.config.session_idle_seconds
        expired = [d for d, seen in self._last_seen.items() if seen < cutoff]
        for device_id in expired:
            del self._last_seen[device_id]
        return [self._sessions.pop(d) for d in expired if d in self._sessions]

    def _close_all(self, sessions: list[DeskSession]) -> None:
        for session in sessions:
            session.close()
            logger.info(f"Closed idle desk session {session.device_id[:8]}")

    def _build_session(self, device_id: str) -> DeskSession:
        cache = NamespacedCache(self.cache, f"device:{device_id}")
        provider = LocalIdentityProvider(self.config.known_emails())
        resolver = RoleResolver(
            cache,
            team_leader_email=self.config.team_leader_email,
            ttl=self.config.role_cache_ttl,
        )
        engine = AggregationEngine(self.orders, cache, self.config.roster)
        controller = SessionController(resolver, engine)

        # Show the cached role straight away, then follow live sign-ins
        resolver.refresh_from_cache_on_startup()
        resolver.attach(provider)

        return DeskSession(
            device_id=device_id,
            identity_provider=provider,
            resolver=resolver,
            engine=engine,
            controller=controller,
        )

    def close(self) -> None:
        """Stop every engine (application shutdown)."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._last_seen.clear()
        for session in sessions:
            session.close()
        logger.info(f"Closed {len(sessions)} desk sessions")


def seed_demo_data(workspace: Workspace) -> int:
    """Load a handful of demo orders into an empty store."""
    if len(workspace.orders) > 0:
        return 0

    now = datetime.now(timezone.utc)
    roster = list(workspace.config.roster)
    statuses = (OrderStatus.COMPLETED, OrderStatus.IN_PROGRESS, OrderStatus.PENDING)

    orders = []
    for i in range(12):
        editor = roster[i % len(roster)] if roster else None
        status = statuses[i % len(statuses)]
        created = now - timedelta(days=3 * i, hours=i)
        orders.append(Order(
            id=f"demo-{i:03d}",
            status=status,
            assigned_to_email=editor.email if editor else None,
            assigned_to_name=editor.name if editor else None,
            created_at=created,
            completed_at=created + timedelta(hours=6 + i) if status == OrderStatus.COMPLETED else None,
            client_name=f"Demo Client {i + 1}",
            whatsapp=f"+91 98765 {i:05d}",
            country="India",
            telecaller="Demo",
        ))

    workspace.orders.load(orders)
    logger.info(f"Seeded {len(orders)} demo orders")
    return len(orders)
