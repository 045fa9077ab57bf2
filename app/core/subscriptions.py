"""
Subscriptions and Publishers

Every live feed in the system (order stream, identity changes,
role updates, rollup snapshots) hands back a Subscription.
Callers keep it and cancel it before subscribing again.

    sub = publisher.subscribe(listener)
    ...
    sub.cancel()   # immediate, idempotent
"""

import logging
from threading import RLock
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """
    Opaque cancellation handle.

    `cancel()` runs the underlying unsubscribe callback at most once.
    After it returns the subscription is inactive.
    """

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()

    def __call__(self) -> None:
        self.cancel()


class Publisher(Generic[T]):
    """
    Synchronous fan-out to listeners, in subscription order.

    A listener that raises is logged and skipped; it does not stop
    delivery to the others.
    """

    def __init__(self, name: str = "publisher"):
        self._name = name
        self._listeners: dict[int, Callable[[T], None]] = {}
        self._next_id = 0
        self._lock = RLock()

    def subscribe(self, listener: Callable[[T], None]) -> Subscription:
        with self._lock:
            listener_id = self._next_id
            self._next_id += 1
            self._listeners[listener_id] = listener
        return Subscription(lambda: self._remove(listener_id))

    def _remove(self, listener_id: int) -> None:
        with self._lock:
            self._listeners.pop(listener_id, None)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, value: T) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                logger.exception(f"Listener on {self._name} failed")
