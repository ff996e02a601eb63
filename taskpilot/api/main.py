"""FastAPI application entrypoint and HTTP endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from taskpilot.core.container import build_orchestrator
from taskpilot.core.logging import configure_logging
from taskpilot.core.orchestrator import Orchestrator
from taskpilot.core.settings import get_settings
from taskpilot.core.worker_pool import QueueNotRegistered
from taskpilot.db.store import InvalidTransition, TaskNotFound
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import QueueStats, TaskReadResponse

log = structlog.get_logger(__name__)


class MessageRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    message: str = Field(...)
    session_id: str | None = None


class MessageResponse(BaseModel):
    reply: str
    status: str
    task_id: str | None = None
    worker_type: WorkerType | None = None


class CancelResponse(BaseModel):
    task_id: str
    cancelled: bool


class QueueStateResponse(BaseModel):
    worker_type: WorkerType
    paused: bool


@asynccontextmanager
async def lifespan(application: FastAPI):
    """FastAPI lifespan hook: configure logging, build the orchestrator, start the pool."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    orchestrator = await build_orchestrator(settings)
    await orchestrator.start()
    application.state.orchestrator = orchestrator
    log.info("api_startup_complete", workers=[w.value for w in orchestrator.pool.registered()])
    yield
    await orchestrator.shutdown()
    log.info("api_shutdown_complete")


app = FastAPI(title="Taskpilot API", version="1.0.0", lifespan=lifespan)


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


@app.exception_handler(TaskNotFound)
async def _task_not_found(request: Request, exc: TaskNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Task not found"})


@app.exception_handler(QueueNotRegistered)
async def _queue_not_registered(request: Request, exc: QueueNotRegistered) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": f"No worker registered for {exc.worker_type.value}"})


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    log.warning("invalid_transition", task_id=exc.task_id, target=exc.target.value)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.post("/v1/messages", status_code=202, response_model=MessageResponse)
async def post_message(body: MessageRequest, request: Request) -> MessageResponse:
    """Handle one user message; returns the immediate acknowledgement."""
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Message cannot be empty")
    reply = await _orchestrator(request).handle(body.user_id, body.session_id, body.message)
    return MessageResponse(reply=reply.reply, status=reply.status, task_id=reply.task_id, worker_type=reply.worker_type)


@app.get("/v1/tasks/{task_id}", response_model=TaskReadResponse)
async def get_task(task_id: str, request: Request) -> TaskReadResponse:
    task = await _orchestrator(request).store.get(task_id)
    return TaskReadResponse.from_task(task)


@app.get("/v1/users/{user_id}/tasks", response_model=list[TaskReadResponse])
async def list_user_tasks(user_id: str, request: Request, limit: int = 50) -> list[TaskReadResponse]:
    tasks = await _orchestrator(request).store.list_by_user(user_id, limit=max(1, min(limit, 200)))
    return [TaskReadResponse.from_task(t) for t in tasks]


@app.post("/v1/tasks/{task_id}/cancel", response_model=CancelResponse)
async def cancel_task(task_id: str, request: Request) -> CancelResponse:
    cancelled = await _orchestrator(request).cancel_task(task_id)
    return CancelResponse(task_id=task_id, cancelled=cancelled)


@app.post("/v1/queues/{worker_type}/pause", response_model=QueueStateResponse)
async def pause_queue(worker_type: WorkerType, request: Request) -> QueueStateResponse:
    _orchestrator(request).pool.pause(worker_type)
    return QueueStateResponse(worker_type=worker_type, paused=True)


@app.post("/v1/queues/{worker_type}/resume", response_model=QueueStateResponse)
async def resume_queue(worker_type: WorkerType, request: Request) -> QueueStateResponse:
    _orchestrator(request).pool.resume(worker_type)
    return QueueStateResponse(worker_type=worker_type, paused=False)


@app.get("/v1/queues/stats", response_model=list[QueueStats])
async def queue_stats(request: Request) -> list[QueueStats]:
    return await _orchestrator(request).pool.stats()


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """Health check: runs every dependency check the orchestrator was built with."""
    checks: dict[str, Any] = {}
    for name, check in _orchestrator(request).health_checks.items():
        try:
            await check()
            checks[name] = {"ok": True, "error": None}
        except (PyMongoError, RedisError, TimeoutError, OSError, ConnectionError, RuntimeError) as e:
            checks[name] = {"ok": False, "error": str(e)}

    overall = "healthy" if all(c["ok"] for c in checks.values()) else "degraded"
    payload: dict[str, Any] = {"status": overall, **checks}
    status_code = 200 if overall == "healthy" else 503
    return JSONResponse(status_code=status_code, content=payload)
