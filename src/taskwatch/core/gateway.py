from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
import os
from typing import Any, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from taskwatch import __version__
from taskwatch.core.config import Settings
from taskwatch.core.errors import DuplicateTaskError, TaskError, TaskKillError, TaskNotFoundError
from taskwatch.core.events import QueueSubscription, StatusChange
from taskwatch.core.logging_config import setup_logging
from taskwatch.core.notifications import DesktopNotifier, NotificationDispatcher, NotificationSink, TelegramNotifier
from taskwatch.core.retention import WorkDirRetentionConfig
from taskwatch.core.service import MAX_PAGE_LINES, TaskService
from taskwatch.integrations.runtime import RuntimeClient
from taskwatch.integrations.telegram import TelegramAdapter

logger = logging.getLogger("taskwatch.gateway")

SSE_KEEPALIVE_SECONDS = 30.0
SSE_POLL_SECONDS = 1.0


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _notification_sinks(settings: Settings) -> List[NotificationSink]:
    sinks: List[NotificationSink] = []
    if settings.desktop_notifications:
        sinks.append(DesktopNotifier())
    if settings.telegram_bot_token and settings.telegram_owner_chat_id:
        sinks.append(TelegramNotifier(TelegramAdapter(settings.telegram_bot_token), settings.telegram_owner_chat_id))
    return sinks


# ---- request models ----

class CreateTaskRequest(BaseModel):
    session_id: str
    conversation_id: str
    correlation_id: str
    output_artifact_path: Optional[str] = None
    pid: Optional[int] = None


class AcknowledgeRequest(BaseModel):
    correlation_id: str
    external_task_id: str
    output_artifact_path: Optional[str] = None
    pid: Optional[int] = None


class NotificationRequest(BaseModel):
    external_task_id: str
    status: str
    output_artifact_path: Optional[str] = None
    correlation_id: Optional[str] = None


class MessagesRequest(BaseModel):
    messages: List[dict] = Field(default_factory=list)


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[RuntimeClient] = None,
    service: Optional[TaskService] = None,
) -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    if settings is None:
        settings = Settings.from_env()
        setup_logging(
            log_dir=settings.log_dir,
            log_level=settings.log_level,
            clear_on_launch=settings.clear_logs_on_launch,
        )

    os.makedirs(settings.data_dir, exist_ok=True)
    if service is None:
        service = TaskService.from_settings(settings, runtime=runtime)
    dispatcher = NotificationDispatcher(_notification_sinks(settings))

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        dispatcher.attach(service.bus)
        service.start()
        logger.info("taskwatch %s ready (data_dir=%s)", __version__, settings.data_dir)

        yield

        # Shutdown
        service.shutdown()
        dispatcher.detach()

    app = FastAPI(title="taskwatch", version=__version__, lifespan=lifespan)
    app.state.service = service

    def _view_or_404(task_id: str):
        try:
            return service.get(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # ---- tasks ----

    @app.post("/tasks")
    def create_task(req: CreateTaskRequest) -> dict:
        try:
            record = service.create(
                session_id=req.session_id,
                conversation_id=req.conversation_id,
                correlation_id=req.correlation_id,
                output_artifact_path=req.output_artifact_path,
                pid=req.pid,
            )
        except DuplicateTaskError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return record.to_dict()

    @app.post("/tasks/ack")
    def acknowledge_task(req: AcknowledgeRequest) -> dict:
        try:
            record = service.acknowledge(
                req.correlation_id,
                req.external_task_id,
                output_artifact_path=req.output_artifact_path,
                pid=req.pid,
            )
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return record.to_dict()

    @app.post("/tasks/notify")
    def task_notification(req: NotificationRequest) -> dict:
        try:
            record = service.handle_notification(
                req.external_task_id,
                req.status,
                output_artifact_path=req.output_artifact_path,
                correlation_id=req.correlation_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if record is None:
            return {"status": "ignored"}
        return service.get(record.id).to_dict()

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str) -> dict:
        return _view_or_404(task_id).to_dict()

    @app.get("/tasks/{task_id}/output")
    def get_task_output(
        task_id: str,
        tail_lines: Optional[int] = Query(None, ge=1, le=MAX_PAGE_LINES),
        offset: Optional[int] = Query(None, ge=0),
        limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_LINES),
    ) -> dict:
        try:
            view = service.get_with_output(task_id, tail_lines=tail_lines, offset=offset, limit=limit)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return view.to_dict()

    @app.get("/tasks/{task_id}/stats")
    def get_task_stats(task_id: str) -> dict:
        try:
            stats = service.output_stats(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if stats is None:
            raise HTTPException(status_code=404, detail="Task has no output artifact")
        return stats

    @app.post("/tasks/{task_id}/refresh")
    def refresh_task(task_id: str) -> dict:
        derived = service.refresh(task_id)
        if derived is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return {"id": task_id, **derived.to_dict()}

    @app.post("/tasks/{task_id}/kill")
    def kill_task(task_id: str) -> dict:
        try:
            result = service.kill_task(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except TaskKillError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except TaskError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return result.to_dict()

    @app.delete("/tasks/{task_id}")
    def delete_task(task_id: str) -> dict:
        record = service.delete(task_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return record.to_dict()

    # ---- sessions & conversations ----

    @app.get("/sessions/{session_id}/tasks")
    def session_tasks(session_id: str) -> list[dict]:
        return [v.to_dict() for v in service.list_by_session(session_id)]

    @app.get("/conversations/{conversation_id}/tasks")
    def conversation_tasks(conversation_id: str) -> list[dict]:
        return [v.to_dict() for v in service.list_by_conversation(conversation_id)]

    @app.get("/conversations/{conversation_id}/running")
    def conversation_running(conversation_id: str) -> dict:
        return service.running_count(conversation_id)

    @app.post("/conversations/{conversation_id}/refresh")
    def conversation_refresh(conversation_id: str) -> dict:
        return {"tasks": service.refresh_conversation(conversation_id)}

    @app.post("/conversations/{conversation_id}/clear")
    def conversation_clear(conversation_id: str) -> dict:
        return {"deleted": service.clear_completed(conversation_id)}

    @app.put("/conversations/{conversation_id}/sessions/{session_id}")
    def upsert_session(conversation_id: str, session_id: str) -> dict:
        conv = service.conversations.upsert_session(conversation_id, session_id)
        return {"conversation_id": conv.conversation_id, "sessions": sorted(conv.sessions)}

    @app.post("/conversations/{conversation_id}/sessions/{session_id}/messages")
    def append_messages(conversation_id: str, session_id: str, req: MessagesRequest) -> dict:
        count = service.conversations.append_messages(conversation_id, session_id, req.messages)
        return {"session_id": session_id, "messages": count}

    @app.delete("/conversations/{conversation_id}")
    def delete_conversation(conversation_id: str) -> dict:
        if not service.conversations.delete_conversation(conversation_id):
            raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
        return {"deleted": conversation_id}

    # ---- events ----

    @app.get("/events")
    async def events(
        request: Request,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> StreamingResponse:
        """Server-sent stream of status changes, optionally filtered."""
        qsub: QueueSubscription = service.open_stream(conversation_id=conversation_id, session_id=session_id)

        async def event_stream():
            try:
                yield format_sse({"type": "connected", "poller": service.poller_status().to_dict()})
                idle = 0.0
                while not await request.is_disconnected():
                    event: Optional[StatusChange] = await asyncio.to_thread(qsub.get, SSE_POLL_SECONDS)
                    if event is not None:
                        idle = 0.0
                        yield format_sse(event.to_dict())
                        continue
                    idle += SSE_POLL_SECONDS
                    if idle >= SSE_KEEPALIVE_SECONDS:
                        idle = 0.0
                        yield ": keepalive\n\n"
            except asyncio.CancelledError:
                pass
            finally:
                qsub.close()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # ---- control ----

    @app.get("/control/poller")
    def poller_status() -> dict:
        return service.poller_status().to_dict()

    @app.get("/control/sweep/preview")
    def sweep_preview(max_age_hours: Optional[float] = Query(None, gt=0)) -> dict:
        config = None
        if max_age_hours is not None:
            config = WorkDirRetentionConfig(
                max_age_hours=max_age_hours,
                preserve_directories=service.workdir_config.preserve_directories,
            )
        return service.sweep_preview(config).to_dict()

    @app.post("/control/sweep")
    def run_sweep() -> dict:
        return service.scheduler.run_now().to_dict()

    return app
