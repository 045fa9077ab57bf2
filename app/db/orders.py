"""
Order Store

In-process order collection that acts both as the order writer and as
the Order Stream Source the Aggregation Engine subscribes to.

STREAM CONTRACT:
    sub = store.subscribe(on_emit, on_error)

- on_emit receives the ENTIRE current order set, immediately on
  subscribe and again after every change. Never deltas.
- Emissions are delivered in change order, one at a time.
- sub.cancel() stops delivery immediately; it is idempotent.

WRITER RULES (enforced here, assumed by aggregation):
- Only the team leader creates orders
- Status only moves forward: pending -> in-progress -> completed
- completed_at is set exactly when an order completes
- Editors may only move orders assigned to them
"""

import logging
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Optional
from uuid import uuid4

from app.core.subscriptions import Subscription
from app.schemas import (
    ALLOWED_TRANSITIONS,
    EditorRole,
    Identity,
    NewOrder,
    Order,
    OrderStatus,
    RosterEditor,
    as_utc,
    detect_country,
)

logger = logging.getLogger(__name__)

EmitCallback = Callable[[list[Order]], None]
ErrorCallback = Callable[[Exception], None]


# ============================================================
# EXCEPTIONS
# ============================================================

class OrderStoreError(Exception):
    """Base exception for order store errors."""
    pass


class OrderNotFoundError(OrderStoreError):
    """Raised when an order id is unknown."""
    pass


class TransitionError(OrderStoreError):
    """Raised when a status change would move an order backwards."""
    pass


class PermissionDeniedError(OrderStoreError):
    """Raised when the actor may not perform the write."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStore:
    """
    Live order collection.

    Thread Safety:
    - All reads, writes and emissions happen under one re-entrant lock,
      so subscribers see snapshots strictly in change order.
    """

    def __init__(
        self,
        roster: tuple[RosterEditor, ...] = (),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._orders: dict[str, Order] = {}
        self._roster = tuple(roster)
        self._clock = clock or _utcnow
        self._subscribers: dict[int, tuple[EmitCallback, Optional[ErrorCallback]]] = {}
        self._next_subscriber = 0
        self._lock = RLock()

    # ================================================================
    # STREAM SOURCE
    # ================================================================

    def subscribe(
        self,
        on_emit: EmitCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Subscribe to full snapshots. Delivers the current set immediately."""
        with self._lock:
            subscriber_id = self._next_subscriber
            self._next_subscriber += 1
            self._subscribers[subscriber_id] = (on_emit, on_error)
            subscription = Subscription(lambda: self._unsubscribe(subscriber_id))
            try:
                on_emit(self._snapshot())
            except Exception:
                logger.exception(f"Order subscriber {subscriber_id} failed on first snapshot")
        return subscription

    def _unsubscribe(self, subscriber_id: int) -> None:
        with self._lock:
            self._subscribers.pop(subscriber_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _snapshot(self) -> list[Order]:
        # Newest first, ties broken by id so snapshots are deterministic
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(
            self._orders.values(),
            key=lambda o: (o.created_at or epoch, o.id),
            reverse=True,
        )

    def _emit(self) -> None:
        snapshot = self._snapshot()
        for subscriber_id, (on_emit, _) in list(self._subscribers.items()):
            # A callback may cancel another subscription mid-delivery
            if subscriber_id not in self._subscribers:
                continue
            try:
                on_emit(list(snapshot))
            except Exception:
                logger.exception(f"Order subscriber {subscriber_id} failed")

    def fail(self, error: Exception) -> None:
        """Signal a terminal failure to every subscriber and drop them."""
        with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
            for _, on_error in subscribers:
                if on_error is not None:
                    on_error(error)
        logger.error(f"Order stream failed: {error}")

    # ================================================================
    # QUERIES
    # ================================================================

    def get_order(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    def list_orders(
        self,
        assigned_to_email: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Order]:
        """
        Orders newest first.

        assigned_to_email scopes the list to one editor (query-level
        scoping, email only). search is a case-insensitive substring
        match over the client and assignee fields.
        """
        with self._lock:
            orders = self._snapshot()

        if assigned_to_email is not None:
            orders = [o for o in orders if o.assigned_to_email == assigned_to_email]

        if search:
            needle = search.lower()
            orders = [
                o for o in orders
                if any(
                    needle in (value or "").lower()
                    for value in (o.client_name, o.whatsapp, o.country, o.telecaller, o.assigned_to_name)
                )
            ]

        return orders

    def __len__(self) -> int:
        return len(self._orders)

    # ================================================================
    # COMMANDS
    # ================================================================

    def create_order(self, new_order: NewOrder, actor_role: EditorRole) -> Order:
        """Create a pending order. Team leader only."""
        if actor_role != EditorRole.TEAM_LEADER:
            raise PermissionDeniedError("Only the team leader can create orders")

        assigned_to_name = new_order.assigned_to_name
        if new_order.assigned_to_email and not assigned_to_name:
            entry = next((e for e in self._roster if e.email == new_order.assigned_to_email), None)
            if entry is not None:
                assigned_to_name = entry.name

        order = Order(
            id=uuid4().hex,
            status=OrderStatus.PENDING,
            assigned_to_email=new_order.assigned_to_email,
            assigned_to_name=assigned_to_name,
            created_at=self._clock(),
            completed_at=None,
            client_name=new_order.client_name,
            whatsapp=new_order.whatsapp,
            country=new_order.country or detect_country(new_order.whatsapp) or "",
            telecaller=new_order.telecaller,
            sample_image_url=new_order.sample_image_url,
        )

        with self._lock:
            self._orders[order.id] = order
            self._emit()

        logger.info(f"Order {order.id} created for {order.assigned_to_email or 'nobody'}")
        return order

    def start_order(self, order_id: str, actor: Identity, actor_role: EditorRole) -> Order:
        """pending -> in-progress"""
        return self._transition(order_id, OrderStatus.IN_PROGRESS, actor, actor_role)

    def complete_order(self, order_id: str, actor: Identity, actor_role: EditorRole) -> Order:
        """pending | in-progress -> completed"""
        return self._transition(order_id, OrderStatus.COMPLETED, actor, actor_role)

    def _transition(
        self,
        order_id: str,
        target: OrderStatus,
        actor: Identity,
        actor_role: EditorRole,
    ) -> Order:
        with self._lock:
            order = self.get_order(order_id)

            if actor_role != EditorRole.TEAM_LEADER and order.assigned_to_email != actor.email:
                raise PermissionDeniedError(
                    f"Order {order_id} is not assigned to {actor.email}"
                )

            if target not in ALLOWED_TRANSITIONS[order.status]:
                raise TransitionError(
                    f"Cannot move order {order_id} from {order.status.value} to {target.value}"
                )

            updates = {"status": target}
            if target == OrderStatus.COMPLETED:
                updates["completed_at"] = as_utc(self._clock())

            updated = order.model_copy(update=updates)
            self._orders[order_id] = updated
            self._emit()

        logger.info(f"Order {order_id}: {order.status.value} -> {target.value} by {actor.email}")
        return updated

    def load(self, orders: list[Order]) -> None:
        """Replace the whole collection (seeding, imports). Emits once."""
        with self._lock:
            self._orders = {o.id: o for o in orders}
            self._emit()
        logger.info(f"Loaded {len(orders)} orders")
