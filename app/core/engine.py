"""
Aggregation Engine

Subscribes to the order stream, recomputes every editor rollup in scope
on each emission, persists the result and publishes the latest view.

STATE MACHINE:

    UNINITIALIZED --start()--> LOADING --first emission--> LIVE
                                  ^                         |  \
                                  |  refresh()              |   emission (full replace)
                                  +-------------------------+
    LIVE --stream failure--> ERROR   (last good rollups kept)
    any  --stop()----------> UNINITIALIZED

CONCURRENCY GUARANTEES:
- At most one order subscription is open at a time
- start() while a subscription is open raises EngineError: call stop() first
- stop() cancels the subscription before returning and is idempotent
- Every subscription carries a generation number; an emission from an
  older generation is dropped, so a late snapshot for a previous
  identity can never overwrite a newer one
- Emissions are processed in delivery order, each one a full replace
- Rollups are published before they are written to the cache; any cache
  failure (CacheError or not) is logged and counted, never raised
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Callable, Optional, Protocol

from pydantic import ValidationError

from app.core.rollups import AggregationScope, compute_rollups, summarize_team
from app.core.subscriptions import Publisher, Subscription
from app.db.cache import DurableCache
from app.schemas import EditorRole, EditorRollup, Identity, Order, RosterEditor, TeamSummary

logger = logging.getLogger(__name__)

ROLLUP_CACHE_KEY = "editorStats"


class EngineError(Exception):
    """Raised when the engine lifecycle is misused."""
    pass


class OrderStreamSource(Protocol):
    """Anything that delivers full order snapshots."""

    def subscribe(
        self,
        on_emit: Callable[[list[Order]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        ...


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    LIVE = "live"
    ERROR = "error"


@dataclass(frozen=True)
class RollupSnapshot:
    """The view the engine publishes after every change."""
    state: EngineState
    rollups: tuple[EditorRollup, ...] = field(default_factory=tuple)
    scope: Optional[AggregationScope] = None
    error: Optional[str] = None
    emission_count: int = 0

    @property
    def loading(self) -> bool:
        return self.state == EngineState.LOADING


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AggregationEngine:
    """
    Live per-editor rollups.

    Dependencies are injected so tests can pass fakes:
    - stream: the order stream source
    - cache: durable cache for the last rollups
    - roster: static editor roster
    """

    def __init__(
        self,
        stream: OrderStreamSource,
        cache: DurableCache,
        roster: tuple[RosterEditor, ...],
        clock: Optional[Callable[[], datetime]] = None,
        metrics=None,
    ):
        self._stream = stream
        self._cache = cache
        self._roster = tuple(roster)
        self._clock = clock or _utcnow
        if metrics is None:
            from app.observability import get_metrics
            metrics = get_metrics()
        self._metrics = metrics

        self._lock = RLock()
        self._views: Publisher[RollupSnapshot] = Publisher("rollups")
        self._generation = 0
        self._subscription: Optional[Subscription] = None
        self._scope: Optional[AggregationScope] = None
        self._state = EngineState.UNINITIALIZED
        self._rollups: tuple[EditorRollup, ...] = ()
        self._orders: tuple[Order, ...] = ()
        self._error: Optional[str] = None
        self._emission_count = 0

    # ================================================================
    # READ SIDE
    # ================================================================

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def active(self) -> bool:
        return self._scope is not None

    @property
    def rollups(self) -> tuple[EditorRollup, ...]:
        return self._rollups

    @property
    def snapshot(self) -> RollupSnapshot:
        with self._lock:
            return self._make_snapshot()

    def subscribe(self, listener: Callable[[RollupSnapshot], None]) -> Subscription:
        """Listen to published snapshots."""
        return self._views.subscribe(listener)

    def summary(self, now: Optional[datetime] = None) -> TeamSummary:
        """Team totals over the latest rollups and order snapshot."""
        with self._lock:
            rollups, orders = list(self._rollups), list(self._orders)
        return summarize_team(rollups, orders, now or self._clock())

    def _make_snapshot(self) -> RollupSnapshot:
        return RollupSnapshot(
            state=self._state,
            rollups=self._rollups,
            scope=self._scope,
            error=self._error,
            emission_count=self._emission_count,
        )

    def _publish(self) -> None:
        self._views.publish(self._make_snapshot())

    # ================================================================
    # LIFECYCLE
    # ================================================================

    def start(self, role: EditorRole, identity: Identity) -> None:
        """Open the single order subscription for this role/identity."""
        scope = AggregationScope.for_role(role, identity)

        with self._lock:
            if self._scope is not None:
                raise EngineError("Engine already started; call stop() before start()")

            self._generation += 1
            generation = self._generation
            self._scope = scope
            self._state = EngineState.LOADING
            self._error = None
            self._emission_count = 0
            self._rollups = self._cached_rollups_in_scope(scope)
            self._orders = ()
            self._publish()

        logger.info(f"Engine starting ({scope.kind.value}) for {identity.email}")

        # Subscribe outside the engine lock: the stream may emit synchronously
        # and takes its own lock first.
        try:
            subscription = self._stream.subscribe(
                lambda orders: self._handle_emission(generation, orders),
                lambda error: self._handle_error(generation, error),
            )
        except Exception:
            # Nothing to cancel; leave the engine startable again
            with self._lock:
                if generation == self._generation:
                    self._scope = None
                    self._state = EngineState.UNINITIALIZED
                    self._rollups = ()
                    self._publish()
            raise

        with self._lock:
            if generation == self._generation:
                self._subscription = subscription
                return

        # stop() ran while we were subscribing
        subscription.cancel()

    def stop(self) -> None:
        """Cancel the subscription and return to UNINITIALIZED. Idempotent."""
        with self._lock:
            if self._scope is None and self._subscription is None:
                return
            self._generation += 1
            subscription, self._subscription = self._subscription, None
            self._scope = None
            self._state = EngineState.UNINITIALIZED
            self._rollups = ()
            self._orders = ()
            self._error = None
            self._emission_count = 0

        if subscription is not None:
            subscription.cancel()

        logger.info("Engine stopped")
        with self._lock:
            self._publish()

    def refresh(self) -> None:
        """
        Drop the cached rollups and show the loading state again.

        Does not force a new emission: the open subscription's next
        snapshot repopulates the view.
        """
        self._remove_cached_rollups()
        with self._lock:
            self._rollups = ()
            if self._scope is not None:
                self._state = EngineState.LOADING
                self._error = None
            self._publish()
        logger.info("Rollups refresh requested")

    # ================================================================
    # STREAM HANDLERS
    # ================================================================

    def _handle_emission(self, generation: int, orders: list[Order]) -> None:
        with self._lock:
            if generation != self._generation or self._scope is None:
                self._metrics.stale_emissions_dropped += 1
                logger.debug(f"Dropped stale emission from generation {generation}")
                return

            started = time.perf_counter()
            rollups = tuple(compute_rollups(self._scope, orders, self._roster))

            # Full replace, never a partial patch
            self._rollups = rollups
            self._orders = tuple(orders)
            self._state = EngineState.LIVE
            self._error = None
            self._emission_count += 1

            self._metrics.record_recompute((time.perf_counter() - started) * 1000)
            self._publish()
            self._persist_rollups(rollups)

    def _handle_error(self, generation: int, error: Exception) -> None:
        with self._lock:
            if generation != self._generation or self._scope is None:
                return
            self._state = EngineState.ERROR
            self._error = str(error) or type(error).__name__
            self._metrics.stream_errors += 1
            logger.error(f"Order stream failed; keeping last rollups: {self._error}")
            self._publish()

    # ================================================================
    # DURABLE CACHE
    # ================================================================

    def _persist_rollups(self, rollups: tuple[EditorRollup, ...]) -> None:
        blob = json.dumps(
            {r.email: r.model_dump(mode="json") for r in rollups},
            sort_keys=True,
        )
        try:
            self._cache.set(ROLLUP_CACHE_KEY, blob)
        except Exception as e:
            self._metrics.cache_write_failures += 1
            logger.warning(f"Could not persist rollups: {e}")

    def _remove_cached_rollups(self) -> None:
        try:
            self._cache.remove(ROLLUP_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Could not clear cached rollups: {e}")

    def load_cached_rollups(self) -> Optional[list[EditorRollup]]:
        """Rollups from the durable cache, or None if absent or unreadable."""
        try:
            blob = self._cache.get(ROLLUP_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Error reading cached rollups: {e}")
            return None

        if not blob:
            return None

        try:
            data = json.loads(blob)
            if not isinstance(data, dict):
                raise ValueError("cached rollups are not keyed by email")
            return [EditorRollup.model_validate(value) for value in data.values()]
        except (ValueError, ValidationError) as e:
            logger.warning(f"Error parsing cached rollups: {e}")
            return None

    def _cached_rollups_in_scope(self, scope: AggregationScope) -> tuple[EditorRollup, ...]:
        cached = self.load_cached_rollups()
        if not cached:
            return ()
        by_email = {r.email: r for r in cached}
        return tuple(
            by_email[editor.email]
            for editor in scope.editors(self._roster)
            if editor.email in by_email
        )
