"""MongoDB repository for tasks and confirmation contexts."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pymongo import ASCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from taskpilot.db.store import (
    ConfirmationAlreadyOpen,
    InvalidTransition,
    TaskNotFound,
    check_outcome,
)
from taskpilot.models.confirmation_models import ConfirmationContext
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import Task, TaskStatus, sources_for, utc_now


class Mongo:
    """Owns the client and the collections used by the stores."""

    def __init__(self, mongo_url: str, *, client: Any | None = None) -> None:
        self.client = client or AsyncMongoClient(mongo_url, tz_aware=True)
        self.db = self.client.taskpilot
        self.tasks = self.db.tasks
        self.confirmations = self.db.confirmations

    async def ping(self) -> None:
        await self.client.admin.command("ping")

    async def ensure_indexes(self) -> None:
        await self.tasks.create_index([("id", ASCENDING)], unique=True)
        await self.tasks.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
        await self.tasks.create_index([("worker_type", ASCENDING), ("status", ASCENDING)])
        # At most one open context per (user, task).
        await self.confirmations.create_index(
            [("user_id", ASCENDING), ("task_id", ASCENDING)], unique=True
        )
        await self.confirmations.create_index([("expires_at", ASCENDING)])

    async def close(self) -> None:
        # PyMongo async close is awaitable.
        await self.client.close()


def _to_doc(model: Task | ConfirmationContext) -> dict[str, Any]:
    """Dump a model for BSON: enums are stored by value, datetimes stay native."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in model.model_dump(mode="python").items()
    }


def _to_task(doc: dict[str, Any]) -> Task:
    doc.pop("_id", None)
    return Task.model_validate(doc)


class MongoTaskStore:
    """Task store; status checks ride on the update filter so they are atomic."""

    def __init__(self, mongo: Mongo) -> None:
        self._tasks = mongo.tasks

    async def create(self, task: Task) -> str:
        await self._tasks.insert_one(_to_doc(task))
        return task.id

    async def get(self, task_id: str) -> Task:
        doc = await self._tasks.find_one({"id": task_id}, projection={"_id": 0})
        if not doc:
            raise TaskNotFound(task_id)
        return _to_task(doc)

    async def _find_and_update(self, query: dict[str, Any], update: dict[str, Any]) -> dict[str, Any] | None:
        update.setdefault("$set", {})["updated_at"] = utc_now()
        return await self._tasks.find_one_and_update(
            query,
            update,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def update_progress(self, task_id: str, percent: int, stage: str) -> Task:
        percent = min(100, max(0, int(percent)))
        doc = await self._find_and_update(
            {"id": task_id},
            {"$max": {"progress_percent": percent}, "$set": {"stage": stage}},
        )
        if not doc:
            raise TaskNotFound(task_id)
        return _to_task(doc)

    async def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        *,
        result: Any | None = None,
        error: str | None = None,
    ) -> Task:
        check_outcome(new_status, result, error)
        changes: dict[str, Any] = {"status": new_status.value}
        if new_status.is_terminal:
            changes.update(result=result, error_message=error, completed_at=utc_now())
        allowed_from = [s.value for s in sources_for(new_status)]
        doc = await self._find_and_update(
            {"id": task_id, "status": {"$in": allowed_from}},
            {"$set": changes},
        )
        if doc:
            return _to_task(doc)
        # Lost the race or illegal move; report what the task holds now.
        current = await self.get(task_id)
        raise InvalidTransition(task_id, current.status, new_status)

    async def increment_attempt(self, task_id: str) -> Task:
        doc = await self._find_and_update({"id": task_id}, {"$inc": {"attempt_count": 1}})
        if not doc:
            raise TaskNotFound(task_id)
        return _to_task(doc)

    async def merge_parameters(self, task_id: str, parameters: dict[str, Any]) -> Task:
        sets = {f"input_parameters.{key}": value for key, value in parameters.items()}
        doc = await self._find_and_update({"id": task_id}, {"$set": sets})
        if not doc:
            raise TaskNotFound(task_id)
        return _to_task(doc)

    async def mark_confirmation_requested(self, task_id: str) -> Task:
        doc = await self._find_and_update({"id": task_id}, {"$inc": {"confirmation_rounds": 1}})
        if not doc:
            raise TaskNotFound(task_id)
        return _to_task(doc)

    async def request_cancel(self, task_id: str) -> Task:
        doc = await self._find_and_update({"id": task_id}, {"$set": {"cancel_requested": True}})
        if not doc:
            raise TaskNotFound(task_id)
        return _to_task(doc)

    async def list_by_user(self, user_id: str, *, limit: int = 50) -> list[Task]:
        """List tasks for a user in chronological order (oldest first)."""
        cursor = (
            self._tasks.find({"user_id": user_id}, projection={"_id": 0})
            .sort("created_at", 1)
            .limit(limit)
        )
        return [_to_task(doc) async for doc in cursor]

    async def list_by_status(
        self, worker_type: WorkerType, status: TaskStatus, *, limit: int = 1000
    ) -> list[Task]:
        cursor = (
            self._tasks.find({"worker_type": worker_type.value, "status": status.value}, projection={"_id": 0})
            .sort("created_at", 1)
            .limit(limit)
        )
        return [_to_task(doc) async for doc in cursor]

    async def count_by_status(self, worker_type: WorkerType) -> dict[TaskStatus, int]:
        counts = {status: 0 for status in TaskStatus}
        cursor = await self._tasks.aggregate(
            [
                {"$match": {"worker_type": worker_type.value}},
                {"$group": {"_id": "$status", "n": {"$sum": 1}}},
            ]
        )
        async for row in cursor:
            try:
                counts[TaskStatus(row["_id"])] = int(row["n"])
            except ValueError:
                continue
        return counts


class MongoConfirmationStore:
    def __init__(self, mongo: Mongo) -> None:
        self._contexts = mongo.confirmations

    async def open(self, context: ConfirmationContext) -> None:
        try:
            await self._contexts.insert_one(_to_doc(context))
        except DuplicateKeyError as e:
            raise ConfirmationAlreadyOpen(context.user_id, context.task_id) from e

    async def get(self, user_id: str, task_id: str) -> ConfirmationContext | None:
        doc = await self._contexts.find_one({"user_id": user_id, "task_id": task_id}, projection={"_id": 0})
        return ConfirmationContext.model_validate(doc) if doc else None

    async def list_open(self, user_id: str) -> list[ConfirmationContext]:
        cursor = self._contexts.find({"user_id": user_id}, projection={"_id": 0}).sort("created_at", 1)
        return [ConfirmationContext.model_validate(doc) async for doc in cursor]

    async def list_expired(self, now: datetime) -> list[ConfirmationContext]:
        cursor = self._contexts.find({"expires_at": {"$lte": now}}, projection={"_id": 0}).sort("created_at", 1)
        return [ConfirmationContext.model_validate(doc) async for doc in cursor]

    async def replace(self, context: ConfirmationContext) -> None:
        await self._contexts.replace_one(
            {"user_id": context.user_id, "task_id": context.task_id},
            _to_doc(context),
            upsert=True,
        )

    async def delete(self, user_id: str, task_id: str) -> bool:
        res = await self._contexts.delete_one({"user_id": user_id, "task_id": task_id})
        return res.deleted_count > 0
