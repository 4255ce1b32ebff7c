"""Unit tests for InputInjector serialization and choice key programs."""

from __future__ import annotations

import asyncio
from contextlib import ExitStack
from unittest.mock import AsyncMock, patch

import pytest

from companion.config import InjectorConfig
from companion.core import tmux_bridge
from companion.core.input_injector import InputInjector, KeyStep, build_choice_keys

NO_DELAYS = InjectorConfig(
    post_text_delay=0,
    post_enter_delay=0,
    post_other_select_delay=0,
    choice_key_delay=0,
    missing_session_retry_delay=0,
)


class KeyRecorder:
    """Records every key/text sent to tmux, in order."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.exists = True

    async def send_literal(self, session: str, text: str) -> bool:
        self.sent.append((session, "text", text))
        await asyncio.sleep(0)
        return True

    async def send_key(self, session: str, key: str) -> bool:
        self.sent.append((session, "key", key))
        await asyncio.sleep(0)
        return True

    async def session_exists(self, _session: str) -> bool:
        return self.exists

    def patch(self) -> ExitStack:
        stack = ExitStack()
        stack.enter_context(patch.object(tmux_bridge, "send_literal", new=self.send_literal))
        stack.enter_context(patch.object(tmux_bridge, "send_key", new=self.send_key))
        stack.enter_context(patch.object(tmux_bridge, "session_exists", new=self.session_exists))
        return stack


def _keys(steps: list[KeyStep]) -> list[str]:
    return [step.value if step.kind != "pause" else "<pause>" for step in steps]


def test_single_select_moves_down_to_index():
    assert _keys(build_choice_keys([2], 5, False)) == ["Down", "Down", "Enter"]


def test_single_select_first_option_is_just_enter():
    assert _keys(build_choice_keys([0], 3, False)) == ["Enter"]


def test_multi_select_toggles_selected_options():
    assert _keys(build_choice_keys([0, 3], 4, True)) == ["Space", "Down", "Down", "Down", "Space", "Enter"]


def test_multi_select_middle_options():
    assert _keys(build_choice_keys([1, 2], 4, True)) == ["Down", "Space", "Down", "Space", "Down", "Enter"]


def test_other_text_selects_entry_after_last_option():
    steps = build_choice_keys([], 3, False, other_text="custom answer")
    assert _keys(steps) == ["Down", "Down", "Down", "Enter", "<pause>", "custom answer", "Enter"]
    assert steps[5] == KeyStep.text("custom answer")


def test_out_of_range_index_is_rejected():
    with pytest.raises(ValueError):
        build_choice_keys([4], 4, False)


def test_single_select_requires_an_index():
    with pytest.raises(ValueError):
        build_choice_keys([], 4, False)


@pytest.mark.asyncio
async def test_send_input_types_text_then_enter():
    recorder = KeyRecorder()
    injector = InputInjector("main", NO_DELAYS)
    with recorder.patch():
        assert await injector.send_input("hello") is True

    assert recorder.sent == [("main", "text", "hello"), ("main", "key", "Enter")]


@pytest.mark.asyncio
async def test_send_input_missing_session_sends_nothing():
    recorder = KeyRecorder()
    recorder.exists = False
    injector = InputInjector("main", NO_DELAYS)
    with recorder.patch():
        assert await injector.send_input("hello") is False

    assert recorder.sent == []


@pytest.mark.asyncio
async def test_concurrent_inputs_are_not_interleaved():
    recorder = KeyRecorder()
    injector = InputInjector("main", NO_DELAYS)
    with recorder.patch():
        results = await asyncio.gather(
            injector.send_input("first"),
            injector.send_input("second", target="other"),
            injector.send_input("third"),
        )

    assert results == [True, True, True]
    assert recorder.sent == [
        ("main", "text", "first"),
        ("main", "key", "Enter"),
        ("other", "text", "second"),
        ("other", "key", "Enter"),
        ("main", "text", "third"),
        ("main", "key", "Enter"),
    ]


@pytest.mark.asyncio
async def test_failed_injection_releases_lock():
    recorder = KeyRecorder()
    injector = InputInjector("main", NO_DELAYS)
    failing = AsyncMock(side_effect=[RuntimeError("tmux exploded"), True])

    with recorder.patch(), patch.object(tmux_bridge, "send_literal", new=failing):
        with pytest.raises(RuntimeError):
            await injector.send_input("boom")
        assert await asyncio.wait_for(injector.send_input("after"), timeout=1) is True


@pytest.mark.asyncio
async def test_send_choice_executes_key_program_in_order():
    recorder = KeyRecorder()
    injector = InputInjector("main", NO_DELAYS)
    with recorder.patch():
        assert await injector.send_choice([0, 3], 4, True) is True

    assert [value for _, _, value in recorder.sent] == ["Space", "Down", "Down", "Down", "Space", "Enter"]


@pytest.mark.asyncio
async def test_cancel_input_bypasses_lock():
    recorder = KeyRecorder()
    injector = InputInjector("main", NO_DELAYS)
    with recorder.patch():
        async with injector._lock:  # an injection is in flight
            assert await asyncio.wait_for(injector.cancel_input(), timeout=1) is True

    assert recorder.sent == [("main", "key", "C-c")]


@pytest.mark.asyncio
async def test_active_session_defaults_and_switches():
    injector = InputInjector("main", NO_DELAYS)
    assert injector.active_session == "main"
    injector.set_active_session("work")
    assert injector.active_session == "work"
    assert injector.default_session == "main"


@pytest.mark.asyncio
async def test_send_with_retry_retries_once_when_session_missing():
    injector = InputInjector("main", NO_DELAYS)
    operation = AsyncMock(side_effect=[False, True])
    with patch.object(tmux_bridge, "session_exists", new=AsyncMock(return_value=False)):
        assert await injector.send_with_retry(operation, retry_delay=0) is True

    assert operation.await_count == 2


@pytest.mark.asyncio
async def test_send_with_retry_does_not_retry_other_failures():
    injector = InputInjector("main", NO_DELAYS)
    operation = AsyncMock(return_value=False)
    with patch.object(tmux_bridge, "session_exists", new=AsyncMock(return_value=True)):
        assert await injector.send_with_retry(operation, retry_delay=0) is False

    assert operation.await_count == 1
