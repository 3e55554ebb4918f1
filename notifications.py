"""
In-process fan-out of order events to merchant dashboards.

One OrderEventBus is created with the app and handed to route handlers by
dependency injection. Each streaming connection holds a Subscription scoped to
one restaurant; publishing drops events nobody is listening for (there is no
backlog, the REST endpoints stay the source of truth).
"""
import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
EVENT_NAMES = (ORDER_CREATED, ORDER_UPDATED)


def order_touches_restaurant(order: Dict[str, Any], restaurant_id: str) -> bool:
    return any(str(item.get("restaurantId")) == restaurant_id for item in order.get("items", []))


class Subscription:
    def __init__(self, restaurant_id: str, loop: asyncio.AbstractEventLoop):
        self.restaurant_id = restaurant_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, event_name: str, order: Dict[str, Any]) -> None:
        # publishers may run in the threadpool, the queue belongs to the loop
        self.loop.call_soon_threadsafe(self.queue.put_nowait, (event_name, order))

    async def get(self, timeout: Optional[float] = None):
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class OrderEventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Subscription]] = {name: [] for name in EVENT_NAMES}

    def subscribe(self, restaurant_id: str) -> Subscription:
        """Register for both event names; must be called from the streaming coroutine."""
        sub = Subscription(restaurant_id, asyncio.get_running_loop())
        with self._lock:
            for name in EVENT_NAMES:
                self._handlers[name].append(sub)
        logger.info("Stream subscribed for restaurant %s", restaurant_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            for name in EVENT_NAMES:
                if sub in self._handlers[name]:
                    self._handlers[name].remove(sub)
        logger.info("Stream unsubscribed for restaurant %s", sub.restaurant_id)

    def subscriber_count(self, event_name: str = ORDER_CREATED) -> int:
        with self._lock:
            return len(self._handlers[event_name])

    def publish(self, event_name: str, order: Dict[str, Any]) -> int:
        """Deliver a serialized order to matching subscribers; returns how many got it."""
        if event_name not in self._handlers:
            raise ValueError(f"Unknown event: {event_name}")
        with self._lock:
            targets = [s for s in self._handlers[event_name] if order_touches_restaurant(order, s.restaurant_id)]
        for sub in targets:
            try:
                sub.deliver(event_name, order)
            except RuntimeError:
                # loop already closed; the connection is on its way out
                logger.debug("Dropped %s for closed stream %s", event_name, sub.restaurant_id)
        return len(targets)


def get_event_bus(request: Request) -> OrderEventBus:
    return request.app.state.event_bus


# ---------------------- SSE framing ----------------------
def sse_frame(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def ping_frame() -> str:
    return sse_frame("ping", {"t": datetime.now(timezone.utc).isoformat()})


async def stream_events(bus: OrderEventBus, restaurant_id: str, ping_seconds: float) -> AsyncIterator[str]:
    """Yield SSE frames for one merchant connection until the client goes away."""
    sub = bus.subscribe(restaurant_id)
    try:
        yield ping_frame()
        while True:
            try:
                event_name, order = await sub.get(timeout=ping_seconds)
            except asyncio.TimeoutError:
                yield ping_frame()
                continue
            kind = "created" if event_name == ORDER_CREATED else "updated"
            yield sse_frame("order", {"type": kind, "order": order})
    finally:
        bus.unsubscribe(sub)
