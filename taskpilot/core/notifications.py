"""User notifications: forwards acknowledgements, questions and summaries off the event bus."""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError
import structlog

from taskpilot.core.events import EventBus, Subscription
from taskpilot.models.events import ConfirmationRequested, LifecycleEvent, TaskStarted, TaskTerminal
from taskpilot.models.task_models import utc_now

log = structlog.get_logger(__name__)


@runtime_checkable
class Notifier(Protocol):
    async def send(self, user_id: str, message: str, *, task_id: str, kind: str) -> None: ...


def channel_for(user_id: str) -> str:
    return f"taskpilot:notifications:{user_id}"


class RedisNotifier:
    """Publishes one JSON message per notification on the user's channel."""

    def __init__(self, *, redis_url: str | None = None, client: redis.Redis | None = None) -> None:
        if client is None and redis_url is None:
            raise ValueError("RedisNotifier needs a redis_url or a client")
        self._client = client or redis.from_url(redis_url, decode_responses=True)

    async def send(self, user_id: str, message: str, *, task_id: str, kind: str) -> None:
        payload = {
            "type": kind,
            "task_id": task_id,
            "message": message,
            "sent_at": utc_now().isoformat(),
        }
        try:
            await self._client.publish(channel_for(user_id), json.dumps(payload))
        except (RedisError, OSError) as e:
            log.error("notification_publish_failed", user_id=user_id, task_id=task_id, error=str(e))
            return
        log.debug("notification_published", user_id=user_id, task_id=task_id, kind=kind)

    async def close(self) -> None:
        await self._client.aclose()

    async def ping(self) -> None:
        await self._client.ping()


class LogNotifier:
    """Writes notifications to the structured log; keeps the last ones for inspection."""

    def __init__(self, *, keep: int = 100) -> None:
        self._keep = keep
        self.sent: list[dict[str, Any]] = []

    async def send(self, user_id: str, message: str, *, task_id: str, kind: str) -> None:
        log.info("notification", user_id=user_id, task_id=task_id, kind=kind, message=message)
        self.sent.append({"user_id": user_id, "task_id": task_id, "kind": kind, "message": message})
        del self.sent[: -self._keep]


class NotificationRelay:
    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._subscription: Subscription | None = None

    def attach(self, bus: EventBus) -> None:
        self._subscription = bus.subscribe(self.handle, "started", "confirmation_requested", "terminal")

    def detach(self, bus: EventBus) -> None:
        if self._subscription is not None:
            bus.unsubscribe(self._subscription)
            self._subscription = None

    async def handle(self, event: LifecycleEvent) -> None:
        message = self.render(event)
        if message:
            await self._notifier.send(event.user_id, message, task_id=event.task_id, kind=event.kind)

    @staticmethod
    def render(event: LifecycleEvent) -> str | None:
        if isinstance(event, TaskStarted):
            return event.acknowledgement
        if isinstance(event, ConfirmationRequested):
            if not event.suggested_answers:
                return event.question
            options = "\n".join(f"- {s.display}" for s in event.suggested_answers)
            return f"{event.question}\n{options}"
        if isinstance(event, TaskTerminal):
            if event.summary:
                return event.summary
            return "Done!" if event.status == "succeeded" else f"Sorry, that didn't work: {event.error_message}"
        return None
