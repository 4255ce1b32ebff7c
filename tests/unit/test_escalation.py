"""Unit tests for the escalation gating and push tiers."""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from companion.config import EscalationConfig
from companion.config.schema import QuietHoursConfig
from companion.core.event_bus import EventBus
from companion.core.events import CompanionEvents, GroupReadyContext, WorkerWaitingContext
from companion.core.escalation import EscalationEvent, EscalationService, in_quiet_hours
from companion.core.models import WorkerQuestion

NOON = datetime(2026, 3, 1, 12, 0)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _event(event_type: str = "worker_waiting", session_id: str = "s1", content: str = "Which ORM?"):
    return EscalationEvent(event_type=event_type, session_id=session_id, session_name="Sprint/api", content=content)


def _service(notifier=None, clock=None, local_now=NOON, **settings) -> EscalationService:
    return EscalationService(
        settings=EscalationConfig(**settings),
        notifier=notifier,
        clock=clock or FakeClock(),
        local_now=lambda: local_now,
    )


@pytest.mark.asyncio
async def test_disabled_event_type_is_dropped():
    service = _service(events=["worker_error"])
    result = await service.handle_event(_event("worker_waiting"))
    assert result.should_broadcast is False
    assert service.get_pending_events() == []


@pytest.mark.asyncio
async def test_muted_session_is_dropped():
    service = _service(muted_sessions=["s1"])
    assert (await service.handle_event(_event(session_id="s1"))).should_broadcast is False
    assert (await service.handle_event(_event(session_id="s2"))).should_broadcast is True


@pytest.mark.asyncio
async def test_rate_limit_per_session():
    clock = FakeClock()
    service = _service(clock=clock, rate_limit_seconds=30)

    assert (await service.handle_event(_event())).should_broadcast
    clock.now += 10
    assert not (await service.handle_event(_event())).should_broadcast
    assert (await service.handle_event(_event(session_id="s2"))).should_broadcast
    clock.now += 25
    assert (await service.handle_event(_event())).should_broadcast
    await service.shutdown()


@pytest.mark.asyncio
async def test_broadcast_then_immediate_push_when_delay_is_zero():
    notifier = AsyncMock()
    broadcast = AsyncMock()
    service = _service(notifier=notifier, push_delay_seconds=0)
    service.set_broadcast_callback(broadcast)

    result = await service.handle_event(_event(content="x" * 500))

    assert result.pending_event is not None
    assert len(result.pending_event.preview) == 200
    broadcast.assert_awaited_once_with(result.pending_event)
    notifier.send.assert_awaited_once_with(result.pending_event)
    assert result.pending_event.push_sent is True
    assert service.get_pending_events() == []


@pytest.mark.asyncio
async def test_failing_broadcast_still_pushes():
    notifier = AsyncMock()
    service = _service(notifier=notifier, push_delay_seconds=0)
    service.set_broadcast_callback(AsyncMock(side_effect=RuntimeError("socket closed")))

    assert (await service.handle_event(_event())).should_broadcast
    notifier.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_delayed_push_fires_after_delay():
    notifier = AsyncMock()
    service = _service(notifier=notifier, push_delay_seconds=0.01)

    result = await service.handle_event(_event())
    assert service.get_pending_events() == [result.pending_event]
    notifier.send.assert_not_awaited()

    await asyncio.sleep(0.1)

    notifier.send.assert_awaited_once()
    assert service.get_pending_events() == []


@pytest.mark.asyncio
async def test_acknowledge_cancels_pending_push():
    notifier = AsyncMock()
    service = _service(notifier=notifier, push_delay_seconds=0.05)
    await service.handle_event(_event(session_id="s1"))
    await service.handle_event(_event(session_id="s2"))

    assert service.acknowledge_session("s1") == 1
    await asyncio.sleep(0.15)

    assert [call.args[0].session_id for call in notifier.send.await_args_list] == ["s2"]
    assert service.acknowledge_session("s1") == 0


@pytest.mark.asyncio
async def test_quiet_hours_suppress_push():
    notifier = AsyncMock()
    service = _service(
        notifier=notifier,
        local_now=datetime(2026, 3, 1, 23, 30),
        push_delay_seconds=0,
        quiet_hours=QuietHoursConfig(enabled=True, start="22:00", end="08:00"),
    )

    result = await service.handle_event(_event())

    assert result.should_broadcast is True
    notifier.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_cleanup_drops_old_events():
    clock = FakeClock()
    service = _service(clock=clock)
    await service.handle_event(_event())
    clock.now += 10

    assert service.cleanup(max_age=60) == 0
    clock.now += 3600
    assert service.cleanup(max_age=60) == 1
    assert service.get_pending_events() == []
    await service.shutdown()


@pytest.mark.parametrize(
    "start, end, hour, minute, expected",
    [
        ("22:00", "08:00", 23, 0, True),
        ("22:00", "08:00", 7, 59, True),
        ("22:00", "08:00", 8, 0, False),
        ("22:00", "08:00", 12, 0, False),
        ("09:00", "17:00", 12, 0, True),
        ("09:00", "17:00", 17, 0, False),
    ],
)
def test_in_quiet_hours(start, end, hour, minute, expected):
    assert in_quiet_hours(start, end, datetime(2026, 3, 1, hour, minute)) is expected


@pytest.mark.asyncio
async def test_attach_escalates_orchestrator_events():
    bus = EventBus()
    broadcast = AsyncMock()
    service = _service(push_delay_seconds=0)
    service.set_broadcast_callback(broadcast)
    service.attach(bus)

    await bus.emit(
        CompanionEvents.WORKER_WAITING,
        WorkerWaitingContext(
            group_id="g1",
            group_name="Sprint",
            worker_id="w1",
            task_slug="api",
            session_id="worker-session",
            question=WorkerQuestion(text="Which ORM?"),
        ),
    )
    await bus.emit(
        CompanionEvents.GROUP_READY_TO_MERGE,
        GroupReadyContext(group_id="g1", group_name="Sprint", foreman_session_id="", completed=2, failed=1),
    )

    first, second = (call.args[0] for call in broadcast.await_args_list)
    assert (first.session_id, first.session_name, first.preview) == ("worker-session", "Sprint/api", "Which ORM?")
    assert second.session_id == "g1"
    assert second.preview == "2 completed, 1 failed: ready to merge"


@pytest.mark.asyncio
async def test_cleanup_loop_starts_once_and_stops_on_shutdown():
    service = _service(push_delay_seconds=60)
    service.start()
    service.start()
    await service.handle_event(_event())
    assert len(service._tasks) == 2

    await service.shutdown()

    assert len(service._tasks) == 0
