"""Explicit publish/subscribe bus for task lifecycle events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from taskpilot.models.events import LifecycleEvent, TaskEvent

log = structlog.get_logger(__name__)

EventHandler = Callable[[LifecycleEvent], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    handler: EventHandler
    kinds: frozenset[str] | None = None

    def wants(self, event: TaskEvent) -> bool:
        return self.kinds is None or getattr(event, "kind", None) in self.kinds


class EventBus:
    """Delivers events to an explicit list of subscribers.

    Subscribers are awaited one after another in subscription order, so a single
    subscriber observes one task's events in publish order. A failing subscriber
    is logged and skipped; it never fails the task that published the event.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, handler: EventHandler, *kinds: str) -> Subscription:
        sub = Subscription(handler=handler, kinds=frozenset(kinds) if kinds else None)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: LifecycleEvent) -> None:
        for sub in list(self._subscriptions):
            if not sub.wants(event):
                continue
            try:
                await sub.handler(event)
            except Exception:  # noqa: BLE001 - subscriber code is external
                log.warning(
                    "event_subscriber_failed",
                    kind=event.kind,
                    task_id=event.task_id,
                    exc_info=True,
                )
