"""WebSocket API for remote clients.

FastAPI app with `GET /health`, a `/ws` endpoint and `POST /session-status`,
where the transcript watcher delivers status events. Each connection gets its
own SessionGuard; messages go through the Gateway. Bus events are pushed to
clients: watcher status only to connections currently viewing that session,
work group and escalation events to everyone.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
from typing import Any, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from companion import __version__, constants
from companion.config import ServerConfig
from companion.core.escalation import PendingEvent
from companion.core.event_bus import EventBus
from companion.core.events import (
    CompanionEvents,
    EventContext,
    EventType,
    GroupReadyContext,
    WorkerErrorContext,
    WorkerWaitingContext,
    WorkGroupUpdateContext,
)
from companion.core.models import SessionStatusEvent
from companion.core.session_guard import SessionGuard
from companion.gateway import Gateway

logger = logging.getLogger(__name__)

WS_SEND_TIMEOUT_S = 2.0


class APIServer:
    """HTTP + WebSocket server driven by uvicorn inside the daemon's event loop."""

    def __init__(self, gateway: Gateway, event_bus: EventBus, settings: Optional[ServerConfig] = None) -> None:
        self.gateway = gateway
        self._bus = event_bus
        self.settings = settings or ServerConfig()
        self.app = FastAPI(title="Companion API", version=__version__)
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[object] | None = None
        self._clients: dict[WebSocket, SessionGuard] = {}
        self._setup_routes()

        event_bus.subscribe(CompanionEvents.SESSION_STATUS, self._handle_session_status)
        for event in (
            CompanionEvents.WORK_GROUP_UPDATE,
            CompanionEvents.WORKER_WAITING,
            CompanionEvents.WORKER_ERROR,
            CompanionEvents.GROUP_READY_TO_MERGE,
        ):
            event_bus.subscribe(event, self._handle_work_group_event)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        async def health() -> dict[str, object]:  # pyright: ignore
            return {"status": "ok", "version": __version__, "clients": len(self._clients)}

        @self.app.post("/session-status")
        async def session_status_endpoint(  # pyright: ignore
            payload: dict[str, Any] = Body(...),
            token: str | None = Query(None),
        ) -> dict[str, object]:
            """Status feed from the transcript watcher; drives worker progress inference."""
            if not self._authorized(token):
                raise HTTPException(status_code=401, detail="Invalid token")
            event = SessionStatusEvent.from_dict(payload)
            if not event.session_id:
                raise HTTPException(status_code=400, detail="sessionId is required")
            await self._bus.emit(CompanionEvents.SESSION_STATUS, event)
            return {"status": "success"}

        @self.app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket, token: str | None = None) -> None:  # pyright: ignore
            await self._handle_websocket(websocket, token)

    def _authorized(self, token: Optional[str]) -> bool:
        expected = self.settings.token
        if not expected:
            return True
        return token is not None and hmac.compare_digest(token, expected)

    async def _handle_websocket(self, websocket: WebSocket, token: Optional[str]) -> None:
        if not self._authorized(token):
            logger.warning("Rejected WebSocket connection: bad token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        guard = SessionGuard()
        self._clients[websocket] = guard
        logger.info("WebSocket client connected (total: %d)", len(self._clients))

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message: object = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "success": False, "error": "Invalid JSON"})
                    continue
                response = await self.gateway.handle_message(message, guard)
                await websocket.send_json(response)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        finally:
            self._clients.pop(websocket, None)
            guard.clear()

    # ==================== Broadcasting ====================

    async def _send(self, websocket: WebSocket, message: dict[str, object]) -> None:
        try:
            await asyncio.wait_for(websocket.send_json(message), timeout=WS_SEND_TIMEOUT_S)
        except (asyncio.TimeoutError, OSError, ConnectionError, RuntimeError, WebSocketDisconnect) as e:
            logger.info("Dropping WebSocket client after failed send: %s", e)
            self._clients.pop(websocket, None)

    async def broadcast(self, message: dict[str, object], session_id: Optional[str] = None) -> int:
        """Send to every client, or only to clients whose guard points at `session_id`."""
        targets = [
            ws
            for ws, guard in list(self._clients.items())
            if session_id is None or guard.is_current_session(session_id)
        ]
        await asyncio.gather(*(self._send(ws, message) for ws in targets))
        return len(targets)

    async def _handle_session_status(self, _event: EventType, context: EventContext) -> None:
        if isinstance(context, SessionStatusEvent) and context.session_id:
            message: dict[str, object] = {"type": "status_change", "payload": context.to_dict()}
            await self.broadcast(message, session_id=context.session_id)

    async def _handle_work_group_event(self, event: EventType, context: EventContext) -> None:
        payload: dict[str, object]
        if isinstance(context, WorkGroupUpdateContext):
            payload = context.group.to_dict()
        elif isinstance(context, WorkerWaitingContext):
            payload = {
                "groupId": context.group_id,
                "groupName": context.group_name,
                "workerId": context.worker_id,
                "taskSlug": context.task_slug,
                "sessionId": context.session_id,
                "question": context.question.to_dict() if context.question else None,
            }
        elif isinstance(context, WorkerErrorContext):
            payload = {
                "groupId": context.group_id,
                "groupName": context.group_name,
                "workerId": context.worker_id,
                "taskSlug": context.task_slug,
                "sessionId": context.session_id,
                "error": context.error,
            }
        elif isinstance(context, GroupReadyContext):
            payload = {
                "groupId": context.group_id,
                "groupName": context.group_name,
                "completed": context.completed,
                "failed": context.failed,
            }
        else:
            return
        await self.broadcast({"type": event, "payload": payload})

    async def broadcast_escalation(self, pending: PendingEvent) -> None:
        await self.broadcast({"type": "escalation", "payload": pending.to_dict()})

    # ==================== Life cycle ====================

    async def start(self) -> None:
        """Start uvicorn as a background task and wait until it is listening."""
        if self.server_task and not self.server_task.done():
            logger.warning("API server already running; skipping start")
            return

        config = uvicorn.Config(self.app, host=self.settings.host, port=self.settings.port, log_level="warning")
        self.server = uvicorn.Server(config)
        server = self.server
        # Uvicorn's own signal handling stays off; the daemon owns signals
        serve_coro = server._serve() if hasattr(server, "_serve") else server.serve()  # pylint: disable=W0212
        self.server_task = asyncio.create_task(serve_coro, name="api-server")

        for _ in range(50):
            if server.started:
                break
            if self.server_task.done():
                raise RuntimeError("API server exited during startup") from self.server_task.exception()
            await asyncio.sleep(0.1)
        if not server.started:
            raise TimeoutError("API server failed to start within timeout")
        logger.info("API server listening on %s:%d", self.settings.host, self.settings.port)

    async def stop(self) -> None:
        for websocket in list(self._clients):
            try:
                await websocket.close()
            except (RuntimeError, OSError) as e:
                logger.debug("Error closing WebSocket: %s", e)
        self._clients.clear()

        if self.server is not None:
            self.server.should_exit = True
        if self.server_task is not None:
            try:
                await asyncio.wait_for(self.server_task, timeout=constants.SHUTDOWN_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timed out stopping API server; cancelling task")
                self.server_task.cancel()
            except asyncio.CancelledError:
                pass
        self.server = None
        self.server_task = None
        logger.info("API server stopped")
