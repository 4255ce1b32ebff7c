"""Notification escalation.

Tier 1 is an immediate broadcast to connected clients. Tier 2 is a push
notification fired after `push_delay_seconds` unless the user acknowledges the
session first. Only the gating lives here: enabled event types, muted
sessions, per-session rate limit and quiet hours. Push delivery is whatever
PushNotifier the daemon is given.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

from companion import constants
from companion.config import EscalationConfig
from companion.core.event_bus import EventBus
from companion.core.events import (
    CompanionEvents,
    EventContext,
    EventType,
    GroupReadyContext,
    WorkerErrorContext,
    WorkerWaitingContext,
)
from companion.core.task_registry import TaskRegistry

logger = logging.getLogger(__name__)

PENDING_EXPIRY_S = 60 * 60
CLEANUP_INTERVAL_S = 5 * 60
_CLEANUP_KEY = "cleanup"


@dataclass
class EscalationEvent:
    event_type: str
    session_id: str
    session_name: str
    content: str


@dataclass
class PendingEvent:  # pylint: disable=too-many-instance-attributes
    id: str
    session_id: str
    session_name: str
    event_type: str
    preview: str
    created_at: float
    push_scheduled_at: float
    push_sent: bool = False
    acknowledged_at: Optional[float] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "sessionName": self.session_name,
            "eventType": self.event_type,
            "preview": self.preview,
            "createdAt": self.created_at,
            "pushScheduledAt": self.push_scheduled_at,
            "pushSent": self.push_sent,
            "acknowledgedAt": self.acknowledged_at,
        }


@dataclass
class EscalationResult:
    should_broadcast: bool
    pending_event: Optional[PendingEvent] = None


class PushNotifier(Protocol):
    async def send(self, event: PendingEvent) -> None: ...


BroadcastCallback = Callable[[PendingEvent], Awaitable[None]]


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(start: str, end: str, now: datetime) -> bool:
    """True if `now` (local time) falls in [start, end). Handles overnight ranges like 22:00-08:00."""
    current = now.hour * 60 + now.minute
    start_min, end_min = _minutes(start), _minutes(end)
    if start_min > end_min:
        return current >= start_min or current < end_min
    return start_min <= current < end_min


class EscalationService:
    """Decides which orchestrator events reach the user, and how loudly."""

    def __init__(
        self,
        settings: Optional[EscalationConfig] = None,
        notifier: Optional[PushNotifier] = None,
        on_broadcast: Optional[BroadcastCallback] = None,
        clock: Callable[[], float] = time.time,
        local_now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings or EscalationConfig()
        self._notifier = notifier
        self._on_broadcast = on_broadcast
        self._clock = clock
        self._local_now = local_now
        self._pending: dict[str, PendingEvent] = {}
        self._last_notified: dict[str, float] = {}
        self._tasks = TaskRegistry("escalation")

    def set_broadcast_callback(self, callback: Optional[BroadcastCallback]) -> None:
        self._on_broadcast = callback

    async def handle_event(self, event: EscalationEvent) -> EscalationResult:
        """Gate an event and, if it passes, broadcast it and schedule its push."""
        settings = self._settings
        if event.event_type not in settings.events:
            return EscalationResult(should_broadcast=False)
        if event.session_id in settings.muted_sessions:
            return EscalationResult(should_broadcast=False)

        now = self._clock()
        if settings.rate_limit_seconds > 0:
            last = self._last_notified.get(event.session_id)
            if last is not None and now - last < settings.rate_limit_seconds:
                logger.debug("Rate-limited %s for session %s", event.event_type, event.session_id)
                return EscalationResult(should_broadcast=False)
        self._last_notified[event.session_id] = now

        pending = PendingEvent(
            id=str(uuid.uuid4()),
            session_id=event.session_id,
            session_name=event.session_name,
            event_type=event.event_type,
            preview=event.content[: constants.ESCALATION_PREVIEW_LENGTH],
            created_at=now,
            push_scheduled_at=now + settings.push_delay_seconds,
        )
        self._pending[pending.id] = pending

        if self._on_broadcast is not None:
            try:
                await self._on_broadcast(pending)
            except Exception as e:  # noqa: BLE001 - broadcast failure must not block the push tier
                logger.error("Broadcast of %s failed: %s", pending.event_type, e, exc_info=True)

        if settings.push_delay_seconds == 0:
            await self._fire_push(pending.id)
        else:
            self._tasks.schedule(pending.id, self._delayed_push(pending.id, settings.push_delay_seconds))
            logger.info(
                "Escalation %s for %r, push in %.0fs", event.event_type, event.session_name, settings.push_delay_seconds
            )

        return EscalationResult(should_broadcast=True, pending_event=pending)

    async def _delayed_push(self, pending_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._fire_push(pending_id)

    async def _fire_push(self, pending_id: str) -> None:
        pending = self._pending.get(pending_id)
        if pending is None or pending.push_sent or pending.acknowledged_at is not None:
            return

        # Marked sent either way so a suppressed push is not retried
        pending.push_sent = True
        quiet = self._settings.quiet_hours
        if quiet.enabled and in_quiet_hours(quiet.start, quiet.end, self._local_now()):
            logger.info("Push for %r suppressed: quiet hours", pending.session_name)
            return

        if self._notifier is None:
            logger.debug("No push notifier configured, dropping push for %r", pending.session_name)
            return
        try:
            await self._notifier.send(pending)
        except Exception as e:  # noqa: BLE001 - delivery is best effort
            logger.error("Push delivery for %r failed: %s", pending.session_name, e, exc_info=True)
            return
        logger.info("Push sent for %r (%s)", pending.session_name, pending.event_type)

    def acknowledge_session(self, session_id: str) -> int:
        """Cancel pending pushes for a session the user is now looking at. Returns how many."""
        now = self._clock()
        cancelled = 0
        for pending in self._pending.values():
            if pending.session_id != session_id or pending.push_sent or pending.acknowledged_at is not None:
                continue
            pending.acknowledged_at = now
            self._tasks.cancel(pending.id)
            cancelled += 1
        if cancelled:
            logger.info("Acknowledged session %s, cancelled %d pending push(es)", session_id, cancelled)
        return cancelled

    def get_pending_events(self) -> list[PendingEvent]:
        return [p for p in self._pending.values() if not p.push_sent and p.acknowledged_at is None]

    def cleanup(self, max_age: float = PENDING_EXPIRY_S) -> int:
        """Drop pending events older than `max_age` seconds."""
        now = self._clock()
        expired = [p.id for p in self._pending.values() if now - p.created_at > max_age]
        for pending_id in expired:
            self._tasks.cancel(pending_id)
            del self._pending[pending_id]
        if expired:
            logger.debug("Expired %d pending escalation(s)", len(expired))
        return len(expired)

    def start(self) -> None:
        if _CLEANUP_KEY not in self._tasks:
            self._tasks.schedule(_CLEANUP_KEY, self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_S)
            self.cleanup()

    async def shutdown(self) -> None:
        await self._tasks.shutdown(timeout=constants.SHUTDOWN_TIMEOUT_S)

    # ==================== Event bus wiring ====================

    def attach(self, event_bus: EventBus) -> None:
        """Escalate worker and group events from the orchestrator."""
        for event in (
            CompanionEvents.WORKER_WAITING,
            CompanionEvents.WORKER_ERROR,
            CompanionEvents.GROUP_READY_TO_MERGE,
        ):
            event_bus.subscribe(event, self._on_bus_event)

    async def _on_bus_event(self, event: EventType, context: EventContext) -> None:
        escalation = to_escalation_event(event, context)
        if escalation is not None:
            await self.handle_event(escalation)


def to_escalation_event(event: EventType, context: EventContext) -> Optional[EscalationEvent]:
    """Map an orchestrator event onto the escalation input shape."""
    if isinstance(context, WorkerWaitingContext):
        text = context.question.text if context.question else "Worker is waiting for input"
        return EscalationEvent(
            event_type=event,
            session_id=context.session_id,
            session_name=f"{context.group_name}/{context.task_slug}",
            content=text,
        )
    if isinstance(context, WorkerErrorContext):
        return EscalationEvent(
            event_type=event,
            session_id=context.session_id,
            session_name=f"{context.group_name}/{context.task_slug}",
            content=context.error,
        )
    if isinstance(context, GroupReadyContext):
        return EscalationEvent(
            event_type=event,
            session_id=context.foreman_session_id or context.group_id,
            session_name=context.group_name,
            content=f"{context.completed} completed, {context.failed} failed: ready to merge",
        )
    return None
