"""
Real-time subscription bookkeeping.

Listeners are attached through FirestoreManager.create_listener. The
Firestore watch stream re-establishes itself, so on errors this manager
only tracks connection state and the reconnect budget; it never
re-issues a subscription.

    disconnected -> connected -> error -> reconnecting -> connected
                                error -> failed   (budget exhausted)

Reconnect timers still pending when data arrives again are cancelled.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from .cache import canonical_json
from .query import QueryOptions
from .retry import exponential_delay

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]


def timer_schedule(delay: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


@dataclass
class Subscription:
    listener_id: str
    collection: str
    options: QueryOptions
    callback: Callable
    unsubscribe: Callable[[], None]
    created_at: float = field(default_factory=time.time)


def listener_id(collection: str, options: Optional[QueryOptions]) -> str:
    options = options or QueryOptions()
    return f"{collection}_{canonical_json(options.model_dump(mode='json'))}"


class RealtimeManager:
    def __init__(
        self,
        manager,
        max_reconnect_attempts: int = 5,
        base_delay: float = 2.0,
        schedule: Scheduler = timer_schedule,
    ):
        self._manager = manager
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self._schedule = schedule
        self._listeners: dict[str, Subscription] = {}
        self._pending: list[Cancellable] = []
        self._lock = threading.RLock()
        self.connection_state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0

    def subscribe(self, collection: str, callback: Callable, options: Optional[QueryOptions] = None) -> Subscription:
        options = options or QueryOptions()
        lid = listener_id(collection, options)

        def on_change(data, error):
            if error is not None:
                logger.error("Real-time error for %s: %s", collection, error)
                self._handle_connection_error(error)
                callback(None, error)
                return
            self._mark_connected()
            callback(data, None)

        # held across create_listener so concurrent duplicates attach one watch
        with self._lock:
            existing = self._listeners.get(lid)
            if existing is not None:
                logger.warning("Listener %s already exists", lid)
                return existing
            unsubscribe = self._manager.create_listener(collection, on_change, options)
            subscription = Subscription(lid, collection, options, callback, unsubscribe)
            self._listeners[lid] = subscription
        logger.info("Real-time listener created for %s", collection)
        return subscription

    def unsubscribe(self, collection: str, options: Optional[QueryOptions] = None) -> bool:
        with self._lock:
            subscription = self._listeners.pop(listener_id(collection, options), None)
        if subscription is None:
            return False
        subscription.unsubscribe()
        logger.info("Real-time listener removed for %s", collection)
        return True

    def unsubscribe_all(self) -> None:
        with self._lock:
            subscriptions = list(self._listeners.values())
            self._listeners.clear()
            pending, self._pending = self._pending, []
        for handle in pending:
            handle.cancel()
        for subscription in subscriptions:
            try:
                subscription.unsubscribe()
            except Exception as exc:
                logger.error("Error unsubscribing listener %s: %s", subscription.listener_id, exc)
        logger.info("All real-time listeners removed")

    def get_connection_status(self) -> dict[str, Any]:
        now = time.time()
        with self._lock:
            return {
                "state": self.connection_state.value,
                "reconnect_attempts": self.reconnect_attempts,
                "active_listeners": len(self._listeners),
                "listeners": [
                    {
                        "id": sub.listener_id,
                        "collection": sub.collection,
                        "created_at": sub.created_at,
                        "age": now - sub.created_at,
                    }
                    for sub in self._listeners.values()
                ],
            }

    def _handle_connection_error(self, error: BaseException) -> None:
        with self._lock:
            self.connection_state = ConnectionState.ERROR
            self.reconnect_attempts += 1
            attempt = self.reconnect_attempts
            if attempt > self.max_reconnect_attempts:
                logger.error("Max reconnection attempts reached")
                self.connection_state = ConnectionState.FAILED
                return
            delay = exponential_delay(self.base_delay, attempt)
            logger.info("Attempting reconnect in %.1fs (attempt %d)", delay, attempt)
            self._pending.append(self._schedule(delay, self._mark_reconnecting))

    def _mark_connected(self) -> None:
        with self._lock:
            self.connection_state = ConnectionState.CONNECTED
            self.reconnect_attempts = 0
            pending, self._pending = self._pending, []
        for handle in pending:
            handle.cancel()

    def _mark_reconnecting(self) -> None:
        with self._lock:
            # stale timers must not pull the state out of connected or failed
            if self.connection_state is ConnectionState.ERROR:
                self.connection_state = ConnectionState.RECONNECTING
