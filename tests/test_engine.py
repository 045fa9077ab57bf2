"""
Tests for the Aggregation Engine and Session Controller

Covers:
1. LOADING -> LIVE on first emission, full replace on every emission
2. Lifecycle misuse (double start, repeated stop)
3. Stale emissions after an identity switch are dropped
4. Stream failure keeps the last good rollups
5. Durable cache: persistence, startup read, write failure
6. Controller: stop-before-start, provisional roles
"""

import json
import pytest
from datetime import datetime, timedelta, timezone

from itsdangerous import URLSafeSerializer

from app.core import (
    ROLLUP_CACHE_KEY,
    AggregationEngine,
    EngineError,
    EngineState,
    RoleResolver,
    ScopeKind,
    SessionController,
    Subscription,
)
from app.db.cache import CacheError, InMemoryCache
from app.db.orders import OrderStore
from app.observability import MetricsCollector
from app.schemas import EditorRole, Identity, NewOrder, Order, OrderStatus, RosterEditor


T1 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
SECRET = "test-secret-for-role-cache-0123456789"

ALICE = RosterEditor(email="alice@mm.com", name="Alice")
BOB = RosterEditor(email="bob@mm.com", name="Bob")
ROSTER = (ALICE, BOB)
LEADER = Identity(email="vivek@mm.com")


def order(order_id, status=OrderStatus.PENDING, email=None, completed=None):
    return Order(
        id=order_id,
        status=status,
        assigned_to_email=email,
        created_at=T1,
        completed_at=completed,
    )


SCENARIO_A = [
    order("o1", OrderStatus.COMPLETED, ALICE.email, completed=T1 + timedelta(hours=4)),
    order("o2", OrderStatus.PENDING, ALICE.email),
    order("o3", OrderStatus.IN_PROGRESS, BOB.email),
]


class FakeStream:
    """
    Order stream that only emits when told to.

    Records every subscription and notes whether two were ever open
    at the same time.
    """

    def __init__(self):
        self.entries = []
        self.overlapped = False

    def subscribe(self, on_emit, on_error=None):
        if any(entry["sub"].active for entry in self.entries):
            self.overlapped = True
        entry = {"on_emit": on_emit, "on_error": on_error}
        entry["sub"] = Subscription()
        self.entries.append(entry)
        return entry["sub"]

    @property
    def active(self):
        return [entry for entry in self.entries if entry["sub"].active]

    def emit(self, orders):
        for entry in self.active:
            entry["on_emit"](list(orders))

    def fail(self, error):
        for entry in self.active:
            entry["on_error"](error)


class FailingWriteCache(InMemoryCache):

    def set(self, key, value):
        raise CacheError("quota exceeded")


class BrokenBackendCache(InMemoryCache):
    """A third-party backend that fails with its own errors, not CacheError."""

    def get(self, key):
        raise OSError("disk full")

    def set(self, key, value):
        raise OSError("disk full")

    def remove(self, key):
        raise OSError("disk full")


class RefusingStream:

    def subscribe(self, on_emit, on_error=None):
        raise ConnectionError("stream unavailable")


@pytest.fixture
def stream():
    return FakeStream()


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def engine(stream, cache, metrics):
    return AggregationEngine(stream, cache, ROSTER, metrics=metrics)


@pytest.fixture
def snapshots(engine):
    received = []
    engine.subscribe(received.append)
    return received


class TestLifecycle:

    def test_initial_state(self, engine):
        assert engine.state == EngineState.UNINITIALIZED
        assert not engine.active
        assert engine.rollups == ()

    def test_start_shows_loading_until_first_emission(self, engine, stream, snapshots):
        engine.start(EditorRole.TEAM_LEADER, LEADER)

        assert engine.state == EngineState.LOADING
        assert snapshots[-1].loading
        assert len(stream.active) == 1

        stream.emit(SCENARIO_A)

        assert engine.state == EngineState.LIVE
        assert not snapshots[-1].loading
        assert snapshots[-1].emission_count == 1
        assert snapshots[-1].scope.kind == ScopeKind.ALL_EDITORS

    def test_team_leader_rollups(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        alice, bob = engine.rollups
        assert (alice.total_assigned, alice.total_completed, alice.current_workload) == (2, 1, 1)
        assert (bob.total_assigned, bob.total_completed, bob.current_workload) == (1, 0, 1)

    def test_editor_sees_only_own_rollup(self, engine, stream):
        engine.start(EditorRole.EDITOR, Identity(email=BOB.email))
        stream.emit(SCENARIO_A)

        assert [r.email for r in engine.rollups] == [BOB.email]

    def test_start_twice_raises(self, engine):
        engine.start(EditorRole.TEAM_LEADER, LEADER)

        with pytest.raises(EngineError):
            engine.start(EditorRole.EDITOR, Identity(email=ALICE.email))

    def test_stop_cancels_subscription(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        engine.stop()

        assert stream.active == []
        assert engine.state == EngineState.UNINITIALIZED
        assert engine.rollups == ()

    def test_stop_is_idempotent(self, engine, stream, snapshots):
        engine.stop()
        assert snapshots == []

        engine.start(EditorRole.TEAM_LEADER, LEADER)
        engine.stop()
        engine.stop()

        assert stream.active == []
        assert [s.state for s in snapshots] == [EngineState.LOADING, EngineState.UNINITIALIZED]

    def test_restart_after_stop(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        engine.stop()
        engine.start(EditorRole.EDITOR, Identity(email=ALICE.email))

        assert len(stream.entries) == 2
        assert len(stream.active) == 1
        assert not stream.overlapped


class TestEmissions:

    def test_same_emission_twice_is_idempotent(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)
        first = engine.rollups
        first_blob = engine._cache.get(ROLLUP_CACHE_KEY)

        stream.emit(SCENARIO_A)

        assert engine.rollups == first
        assert engine._cache.get(ROLLUP_CACHE_KEY) == first_blob

    def test_every_emission_is_full_replace(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        stream.emit([order("o9", OrderStatus.PENDING, BOB.email)])

        alice, bob = engine.rollups
        assert alice.total_assigned == 0
        assert alice.completed_orders == []
        assert bob.total_assigned == 1

    def test_completion_moves_workload(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        updated = list(SCENARIO_A)
        updated[1] = updated[1].model_copy(update={
            "status": OrderStatus.COMPLETED,
            "completed_at": T1 + timedelta(hours=8),
        })
        stream.emit(updated)

        alice = engine.rollups[0]
        assert (alice.total_completed, alice.current_workload) == (2, 0)
        assert [ref.id for ref in alice.completed_orders] == ["o2", "o1"]

    def test_emissions_counted(self, engine, stream, metrics):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)
        stream.emit(SCENARIO_A)

        assert metrics.emissions_processed == 2
        assert len(metrics.recompute_latencies_ms) == 2


class TestIdentitySwitch:

    def test_late_emission_for_previous_identity_is_dropped(self, engine, stream, metrics):
        engine.start(EditorRole.EDITOR, Identity(email=ALICE.email))
        stale_callback = stream.entries[0]["on_emit"]

        engine.stop()
        engine.start(EditorRole.EDITOR, Identity(email=BOB.email))
        stream.emit(SCENARIO_A)

        # Snapshot for the old subscription arrives after the switch
        stale_callback(SCENARIO_A)

        assert [r.email for r in engine.rollups] == [BOB.email]
        assert metrics.stale_emissions_dropped == 1

    def test_emission_after_stop_is_dropped(self, engine, stream, snapshots):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        callback = stream.entries[0]["on_emit"]
        engine.stop()
        published = len(snapshots)

        callback(SCENARIO_A)

        assert engine.rollups == ()
        assert len(snapshots) == published

    def test_stream_that_emits_during_subscribe(self, cache, metrics):
        store = OrderStore(roster=ROSTER)
        store.load(SCENARIO_A)
        engine = AggregationEngine(store, cache, ROSTER, metrics=metrics)

        engine.start(EditorRole.EDITOR, Identity(email=ALICE.email))

        assert engine.state == EngineState.LIVE
        assert engine.rollups[0].total_assigned == 2
        assert store.subscriber_count == 1

        engine.stop()
        assert store.subscriber_count == 0


class TestStreamErrors:

    def test_error_keeps_last_rollups(self, engine, stream, metrics, snapshots):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)
        good = engine.rollups

        stream.fail(RuntimeError("permission denied"))

        assert engine.state == EngineState.ERROR
        assert engine.rollups == good
        assert snapshots[-1].error == "permission denied"
        assert metrics.stream_errors == 1

    def test_error_before_first_emission(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)

        stream.fail(RuntimeError())

        assert engine.state == EngineState.ERROR
        assert engine.snapshot.error == "RuntimeError"
        assert engine.rollups == ()

    def test_next_emission_recovers(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.fail(RuntimeError("offline"))

        stream.emit(SCENARIO_A)

        assert engine.state == EngineState.LIVE
        assert engine.snapshot.error is None


class TestDurableCache:

    def test_rollups_persisted_keyed_by_email(self, engine, stream, cache):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        stored = json.loads(cache.get(ROLLUP_CACHE_KEY))

        assert set(stored) == {ALICE.email, BOB.email}
        assert stored[ALICE.email]["total_assigned"] == 2

    def test_cached_rollups_shown_while_loading(self, stream, cache, metrics):
        first = AggregationEngine(stream, cache, ROSTER, metrics=metrics)
        first.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)
        first.stop()

        # Next page load: cached values first, live values on emission
        second = AggregationEngine(stream, cache, ROSTER, metrics=metrics)
        second.start(EditorRole.TEAM_LEADER, LEADER)

        assert second.state == EngineState.LOADING
        assert [r.email for r in second.rollups] == [ALICE.email, BOB.email]
        assert second.rollups[0].total_assigned == 2

    def test_cached_rollups_filtered_to_scope(self, stream, cache, metrics):
        first = AggregationEngine(stream, cache, ROSTER, metrics=metrics)
        first.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)
        first.stop()

        second = AggregationEngine(stream, cache, ROSTER, metrics=metrics)
        second.start(EditorRole.EDITOR, Identity(email=BOB.email))

        assert [r.email for r in second.rollups] == [BOB.email]

    def test_corrupt_cached_rollups_ignored(self, engine, cache):
        cache.set(ROLLUP_CACHE_KEY, "{not json")

        engine.start(EditorRole.TEAM_LEADER, LEADER)

        assert engine.load_cached_rollups() is None
        assert engine.rollups == ()
        assert engine.state == EngineState.LOADING

    def test_wrong_shape_cached_rollups_ignored(self, engine, cache):
        cache.set(ROLLUP_CACHE_KEY, json.dumps([1, 2, 3]))
        assert engine.load_cached_rollups() is None

    def test_cache_write_failure_still_publishes(self, stream, metrics):
        engine = AggregationEngine(stream, FailingWriteCache(), ROSTER, metrics=metrics)
        received = []
        engine.subscribe(received.append)

        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        assert received[-1].state == EngineState.LIVE
        assert received[-1].rollups[0].total_assigned == 2
        assert metrics.cache_write_failures == 1

    def test_backend_error_on_write_does_not_break_start(self, metrics):
        store = OrderStore(roster=ROSTER)
        store.load(SCENARIO_A)
        engine = AggregationEngine(store, BrokenBackendCache(), ROSTER, metrics=metrics)
        received = []
        engine.subscribe(received.append)

        engine.start(EditorRole.TEAM_LEADER, LEADER)

        assert engine.state == EngineState.LIVE
        assert received[-1].state == EngineState.LIVE
        assert received[-1].rollups[0].total_assigned == 2
        assert metrics.cache_write_failures == 1
        assert store.subscriber_count == 1

        engine.stop()
        assert store.subscriber_count == 0

    def test_backend_error_on_refresh_is_logged(self, stream, metrics):
        engine = AggregationEngine(stream, BrokenBackendCache(), ROSTER, metrics=metrics)
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        engine.refresh()

        assert engine.state == EngineState.LOADING
        assert engine.load_cached_rollups() is None

    def test_rollups_published_before_cache_write(self, engine, stream, cache):
        seen_in_cache = []

        def on_snapshot(snapshot):
            if snapshot.state == EngineState.LIVE:
                seen_in_cache.append(cache.get(ROLLUP_CACHE_KEY))

        engine.subscribe(on_snapshot)
        engine.start(EditorRole.TEAM_LEADER, LEADER)

        stream.emit(SCENARIO_A)

        assert seen_in_cache == [None]
        assert cache.get(ROLLUP_CACHE_KEY) is not None

    def test_failed_subscribe_leaves_engine_startable(self, cache, metrics, stream):
        engine = AggregationEngine(RefusingStream(), cache, ROSTER, metrics=metrics)

        with pytest.raises(ConnectionError):
            engine.start(EditorRole.TEAM_LEADER, LEADER)

        assert not engine.active
        assert engine.state == EngineState.UNINITIALIZED
        engine._stream = stream
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        assert len(stream.active) == 1

    def test_refresh_clears_cache_and_shows_loading(self, engine, stream, cache):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        engine.refresh()

        assert cache.get(ROLLUP_CACHE_KEY) is None
        assert engine.state == EngineState.LOADING
        assert engine.rollups == ()
        # The open subscription repopulates
        stream.emit(SCENARIO_A)
        assert engine.state == EngineState.LIVE
        assert len(engine.rollups) == 2

    def test_refresh_when_stopped(self, engine, cache):
        cache.set(ROLLUP_CACHE_KEY, "{}")

        engine.refresh()

        assert cache.get(ROLLUP_CACHE_KEY) is None
        assert engine.state == EngineState.UNINITIALIZED


class TestSummary:

    def test_summary_over_latest_emission(self, engine, stream):
        engine.start(EditorRole.TEAM_LEADER, LEADER)
        stream.emit(SCENARIO_A)

        summary = engine.summary(now=T1)

        assert summary.total_orders == 3
        assert summary.total_assigned == 3
        assert summary.total_completed == 1
        assert summary.completion_rate == 33


class IdentityFeed:
    """Minimal identity provider: replays changes to its listener."""

    def __init__(self):
        self.listeners = []

    def on_change(self, callback):
        self.listeners.append(callback)
        return Subscription(lambda: self.listeners.remove(callback))

    def change(self, identity):
        for callback in list(self.listeners):
            callback(identity)


class TestSessionController:

    @pytest.fixture
    def resolver(self):
        return RoleResolver(InMemoryCache(), serializer=URLSafeSerializer(SECRET, salt="test"))

    @pytest.fixture
    def feed(self, resolver):
        feed = IdentityFeed()
        resolver.attach(feed)
        return feed

    @pytest.fixture
    def controller(self, resolver, engine):
        return SessionController(resolver, engine)

    def test_sign_in_starts_engine(self, controller, feed, engine, stream):
        feed.change(LEADER)

        assert controller.bound == (LEADER, EditorRole.TEAM_LEADER)
        assert engine.active
        assert len(stream.active) == 1

    def test_switch_cancels_before_subscribing(self, controller, feed, engine, stream):
        feed.change(Identity(email=ALICE.email))
        feed.change(Identity(email=BOB.email))

        assert not stream.overlapped
        assert len(stream.entries) == 2
        assert len(stream.active) == 1
        stream.emit(SCENARIO_A)
        assert [r.email for r in engine.rollups] == [BOB.email]

    def test_same_identity_again_keeps_subscription(self, controller, feed, stream):
        feed.change(LEADER)
        feed.change(Identity(email=LEADER.email))

        assert len(stream.entries) == 1

    def test_sign_out_stops_engine(self, controller, feed, engine, stream):
        feed.change(LEADER)

        feed.change(None)

        assert controller.bound is None
        assert not engine.active
        assert stream.active == []

    def test_cached_role_does_not_start_engine(self, engine, stream):
        shared = InMemoryCache()
        serializer = URLSafeSerializer(SECRET, salt="test")
        RoleResolver(shared, serializer=serializer).on_identity_change(LEADER)

        resolver = RoleResolver(shared, serializer=serializer)
        controller = SessionController(resolver, engine)
        resolver.refresh_from_cache_on_startup()

        assert controller.role == EditorRole.TEAM_LEADER
        assert controller.bound is None
        assert stream.entries == []

    def test_close_stops_engine(self, controller, feed, engine, stream):
        feed.change(LEADER)

        controller.close()

        assert stream.active == []
        assert not engine.active
        # No longer listening
        feed.change(Identity(email=ALICE.email))
        assert stream.entries and len(stream.entries) == 1

    def test_end_to_end_with_order_store(self, resolver, feed, cache, metrics):
        store = OrderStore(roster=ROSTER)
        engine = AggregationEngine(store, cache, ROSTER, metrics=metrics)
        SessionController(resolver, engine)

        feed.change(Identity(email=ALICE.email))
        assert engine.rollups[0].total_assigned == 0

        created = store.create_order(
            NewOrder(client_name="Meera", assigned_to_email=ALICE.email),
            EditorRole.TEAM_LEADER,
        )
        assert engine.rollups[0].current_workload == 1

        store.complete_order(created.id, Identity(email=ALICE.email), EditorRole.EDITOR)
        assert engine.rollups[0].total_completed == 1
        assert engine.rollups[0].completed_orders[0].id == created.id

        feed.change(LEADER)
        assert store.subscriber_count == 1
        assert [r.email for r in engine.rollups] == [ALICE.email, BOB.email]
