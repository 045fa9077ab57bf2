"""
Tests for the Role Resolver

Covers:
1. Role resolution (pure)
2. Cache TTL boundaries
3. Fail-open cache reads (corrupt, tampered, unavailable)
4. Sign-in / sign-out publication
5. Stale-while-revalidate startup
"""

import pytest
from datetime import datetime, timedelta, timezone

from itsdangerous import URLSafeSerializer

from app.core import ROLE_CACHE_KEY, RoleResolver, resolve_role
from app.db.cache import CacheError, DurableCache, InMemoryCache
from app.schemas import EditorRole, Identity


T0 = datetime(2024, 3, 10, 9, 0, 0, tzinfo=timezone.utc)
SECRET = "test-secret-for-role-cache-0123456789"


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class UnavailableCache(DurableCache):
    """A cache whose backing store is gone."""

    def get(self, key):
        raise CacheError("storage unavailable")

    def set(self, key, value):
        raise CacheError("storage unavailable")

    def remove(self, key):
        raise CacheError("storage unavailable")


class TestResolveRole:

    def test_team_leader_address(self):
        assert resolve_role("vivek@mm.com") == EditorRole.TEAM_LEADER

    def test_everyone_else_is_editor(self):
        for email in ("tarun@mm.com", "roop@mm.com", "someone@else.org"):
            assert resolve_role(email) == EditorRole.EDITOR

    def test_case_and_whitespace_ignored(self):
        assert resolve_role("Vivek@MM.com") == EditorRole.TEAM_LEADER
        assert resolve_role("vivek@mm.com", team_leader_email=" Vivek@MM.com ") == EditorRole.TEAM_LEADER

    def test_configured_team_leader(self):
        assert resolve_role("boss@mm.com", team_leader_email="boss@mm.com") == EditorRole.TEAM_LEADER
        assert resolve_role("vivek@mm.com", team_leader_email="boss@mm.com") == EditorRole.EDITOR


class TestRoleResolver:

    @pytest.fixture
    def clock(self):
        return Clock(T0)

    @pytest.fixture
    def cache(self):
        return InMemoryCache()

    @pytest.fixture
    def resolver(self, cache, clock):
        return RoleResolver(cache, clock=clock, serializer=URLSafeSerializer(SECRET, salt="test"))

    @pytest.fixture
    def updates(self, resolver):
        received = []
        resolver.subscribe(received.append)
        return received

    def test_sign_in_caches_and_publishes(self, resolver, cache, updates):
        resolver.on_identity_change(Identity(email="vivek@mm.com"))

        assert cache.get(ROLE_CACHE_KEY) is not None
        assert len(updates) == 1
        assert updates[0].identity.email == "vivek@mm.com"
        assert updates[0].role == EditorRole.TEAM_LEADER
        assert updates[0].from_cache is False

        cached = resolver.load_cached_role()
        assert cached.email == "vivek@mm.com"
        assert cached.role == EditorRole.TEAM_LEADER
        assert cached.cached_at == T0

    def test_sign_out_removes_cache_and_publishes_none(self, resolver, cache, updates):
        resolver.on_identity_change(Identity(email="tarun@mm.com"))
        resolver.on_identity_change(None)

        assert cache.get(ROLE_CACHE_KEY) is None
        assert updates[-1].identity is None
        assert updates[-1].role is None

    def test_expired_just_past_ttl(self, resolver, cache, clock):
        resolver.on_identity_change(Identity(email="tarun@mm.com"))

        clock.now = T0 + timedelta(hours=24, milliseconds=1)

        assert resolver.load_cached_role() is None
        assert cache.get(ROLE_CACHE_KEY) is None

    def test_present_just_before_ttl(self, resolver, clock):
        resolver.on_identity_change(Identity(email="tarun@mm.com"))

        clock.now = T0 + timedelta(hours=24) - timedelta(milliseconds=1)

        cached = resolver.load_cached_role()
        assert cached is not None
        assert cached.role == EditorRole.EDITOR

    def test_absent_cache_is_miss(self, resolver):
        assert resolver.load_cached_role() is None

    def test_unparsable_cache_is_miss_and_removed(self, resolver, cache):
        cache.set(ROLE_CACHE_KEY, "{not json")

        assert resolver.load_cached_role() is None
        assert cache.get(ROLE_CACHE_KEY) is None

    def test_tampered_cache_is_miss(self, resolver, cache):
        forged = URLSafeSerializer("attacker-secret-0123456789", salt="test").dumps(
            {"email": "tarun@mm.com", "role": "team-leader", "cached_at": T0.isoformat()}
        )
        cache.set(ROLE_CACHE_KEY, forged)

        assert resolver.load_cached_role() is None
        assert cache.get(ROLE_CACHE_KEY) is None

    def test_wrong_shape_is_miss(self, resolver, cache):
        serializer = URLSafeSerializer(SECRET, salt="test")
        cache.set(ROLE_CACHE_KEY, serializer.dumps({"role": "editor"}))

        assert resolver.load_cached_role() is None

    def test_unavailable_cache_never_raises(self, clock):
        resolver = RoleResolver(
            UnavailableCache(), clock=clock, serializer=URLSafeSerializer(SECRET, salt="test")
        )
        updates = []
        resolver.subscribe(updates.append)

        assert resolver.load_cached_role() is None
        resolver.on_identity_change(Identity(email="vivek@mm.com"))
        resolver.on_identity_change(None)

        assert [u.role for u in updates] == [EditorRole.TEAM_LEADER, None]

    def test_backend_errors_never_raise(self, clock):
        class DiskFullCache(UnavailableCache):
            def get(self, key):
                raise OSError("disk full")

            def set(self, key, value):
                raise OSError("disk full")

            def remove(self, key):
                raise OSError("disk full")

        resolver = RoleResolver(
            DiskFullCache(), clock=clock, serializer=URLSafeSerializer(SECRET, salt="test")
        )

        assert resolver.refresh_from_cache_on_startup() is None
        resolver.on_identity_change(Identity(email="tarun@mm.com"))
        assert resolver.current.role == EditorRole.EDITOR
        resolver.on_identity_change(None)
        assert resolver.current.role is None


class TestStartupFromCache:

    @pytest.fixture
    def clock(self):
        return Clock(T0)

    @pytest.fixture
    def cache(self, clock):
        # A previous page load signed in and cached the role
        shared = InMemoryCache()
        earlier = RoleResolver(shared, clock=clock, serializer=URLSafeSerializer(SECRET, salt="test"))
        earlier.on_identity_change(Identity(email="vivek@mm.com"))
        return shared

    def _resolver(self, cache, clock):
        return RoleResolver(cache, clock=clock, serializer=URLSafeSerializer(SECRET, salt="test"))

    def test_publishes_cached_role_before_sign_in(self, cache, clock):
        clock.now = T0 + timedelta(hours=1)
        resolver = self._resolver(cache, clock)
        updates = []
        resolver.subscribe(updates.append)

        cached = resolver.refresh_from_cache_on_startup()

        assert cached is not None
        assert len(updates) == 1
        assert updates[0].from_cache is True
        assert updates[0].role == EditorRole.TEAM_LEADER
        assert resolver.current.from_cache is True

    def test_live_event_supersedes_cached_role(self, cache, clock):
        resolver = self._resolver(cache, clock)
        resolver.refresh_from_cache_on_startup()

        resolver.on_identity_change(Identity(email="roop@mm.com"))

        assert resolver.current.from_cache is False
        assert resolver.current.role == EditorRole.EDITOR
        assert resolver.current.identity.email == "roop@mm.com"

    def test_cache_ignored_after_live_event(self, cache, clock):
        resolver = self._resolver(cache, clock)
        resolver.on_identity_change(None)
        updates = []
        resolver.subscribe(updates.append)

        assert resolver.refresh_from_cache_on_startup() is None
        assert updates == []

    def test_expired_cache_publishes_nothing(self, cache, clock):
        clock.now = T0 + timedelta(days=2)
        resolver = self._resolver(cache, clock)
        updates = []
        resolver.subscribe(updates.append)

        assert resolver.refresh_from_cache_on_startup() is None
        assert updates == []
