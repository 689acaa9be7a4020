from __future__ import annotations

import inspect
import threading
from typing import Any, Awaitable, Callable, Union

from ..core.logging import get_logger
from ..core.metrics import increment_event_handler_failure
from ..schemas.events import AgentEvent, EventType

logger = get_logger(name=__name__)

EventHandler = Callable[[AgentEvent], Union[Awaitable[None], None]]


class Subscription:
    """Handle returned by the bus; closing it deregisters the handler."""

    __slots__ = ("_bus", "_handler", "_event_type", "_active", "_lock")

    def __init__(self, bus: "AgentEventBus", handler: EventHandler, event_type: EventType | None) -> None:
        self._bus = bus
        self._handler = handler
        self._event_type = event_type
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def event_type(self) -> EventType | None:
        return self._event_type

    @property
    def handler(self) -> EventHandler:
        return self._handler

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._bus._remove(self)

    close = unsubscribe

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class AgentEventBus:
    """In-process fan-out of lifecycle events.

    Handler lists are replaced on every change rather than mutated, so a publish
    walks a stable snapshot while other callers subscribe or unsubscribe.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._typed: dict[EventType, tuple[Subscription, ...]] = {}
        self._catch_all: tuple[Subscription, ...] = ()

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Subscription:
        kind = EventType(event_type)
        subscription = Subscription(self, handler, kind)
        with self._lock:
            self._typed[kind] = self._typed.get(kind, ()) + (subscription,)
        return subscription

    def subscribe_all(self, handler: EventHandler) -> Subscription:
        subscription = Subscription(self, handler, None)
        with self._lock:
            self._catch_all = self._catch_all + (subscription,)
        return subscription

    def handler_count(self, event_type: EventType | str | None = None) -> int:
        with self._lock:
            if event_type is None:
                return sum(len(subs) for subs in self._typed.values()) + len(self._catch_all)
            return len(self._typed.get(EventType(event_type), ()))

    async def publish(self, event: AgentEvent) -> None:
        with self._lock:
            snapshot = self._typed.get(event.event_type, ()) + self._catch_all

        for subscription in snapshot:
            if not subscription.active:
                continue
            await self._invoke(subscription, event)

    async def _invoke(self, subscription: Subscription, event: AgentEvent) -> None:
        handler = subscription.handler
        try:
            outcome = handler(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            kind = event.event_type.value
            logger.exception(
                "event_handler_failed",
                event_type=kind,
                task_id=event.task_id,
                handler=getattr(handler, "__qualname__", repr(handler)),
            )
            increment_event_handler_failure(event_type=kind)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription.event_type is None:
                self._catch_all = tuple(sub for sub in self._catch_all if sub is not subscription)
                return
            remaining = tuple(sub for sub in self._typed.get(subscription.event_type, ()) if sub is not subscription)
            if remaining:
                self._typed[subscription.event_type] = remaining
            else:
                self._typed.pop(subscription.event_type, None)


__all__ = ["AgentEventBus", "EventHandler", "Subscription"]
