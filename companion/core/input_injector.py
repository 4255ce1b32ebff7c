"""Input injector - the single point of keystroke delivery into tmux.

All text and choice injections share one asyncio.Lock, so concurrent callers
are served one at a time in call order and a multi-key sequence is never
interleaved with another. Interrupts and pane captures bypass the lock: an
interrupt must be able to cut through a long injection, and captures are
read-only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional, Sequence

from companion import constants
from companion.config import InjectorConfig
from companion.core import tmux_bridge

logger = logging.getLogger(__name__)

StepKind = Literal["key", "text", "pause"]


@dataclass(frozen=True)
class KeyStep:
    """One step of a key program: a named key, literal text, or a settle pause."""

    kind: StepKind
    value: str = ""

    @classmethod
    def key(cls, name: str) -> KeyStep:
        return cls("key", name)

    @classmethod
    def text(cls, text: str) -> KeyStep:
        return cls("text", text)

    @classmethod
    def pause(cls) -> KeyStep:
        return cls("pause")


def build_choice_keys(
    selected_indices: Sequence[int],
    option_count: int,
    multi_select: bool,
    other_text: Optional[str] = None,
) -> list[KeyStep]:
    """Translate a choice selection into the keys the agent's selection UI expects.

    The cursor starts on the first option; the free-text "Other" entry sits
    right after the last listed option.

    Raises:
        ValueError: an index is outside 0..option_count-1, or a single
            selection names no option.
    """
    if option_count < 0:
        raise ValueError(f"option_count must be >= 0, got {option_count}")

    if other_text:
        steps = [KeyStep.key("Down")] * option_count
        steps += [KeyStep.key("Enter"), KeyStep.pause(), KeyStep.text(other_text), KeyStep.key("Enter")]
        return steps

    for index in selected_indices:
        if not 0 <= index < option_count:
            raise ValueError(f"Choice index {index} out of range for {option_count} options")

    if multi_select:
        selected = set(selected_indices)
        steps = []
        for i in range(option_count):
            if i in selected:
                steps.append(KeyStep.key("Space"))
            if i < option_count - 1:
                steps.append(KeyStep.key("Down"))
        steps.append(KeyStep.key("Enter"))
        return steps

    if not selected_indices:
        raise ValueError("Single selection requires one index")
    return [KeyStep.key("Down")] * selected_indices[0] + [KeyStep.key("Enter")]


class InputInjector:
    """Serialized text and choice injection into the active (or a named) session."""

    def __init__(self, default_session: str, settings: Optional[InjectorConfig] = None) -> None:
        self._default_session = default_session
        self._active_session = default_session
        self._settings = settings or InjectorConfig()
        self._lock = asyncio.Lock()

    @property
    def default_session(self) -> str:
        return self._default_session

    @property
    def active_session(self) -> str:
        return self._active_session

    def set_active_session(self, session_name: str) -> None:
        if session_name != self._active_session:
            logger.info("Active tmux session: %s -> %s", self._active_session, session_name)
        self._active_session = session_name

    def _target(self, target: Optional[str]) -> str:
        return target or self._active_session

    async def check_session_exists(self, target: Optional[str] = None) -> bool:
        return await tmux_bridge.session_exists(self._target(target))

    async def send_input(self, text: str, target: Optional[str] = None) -> bool:
        """Type text into the session and press Enter."""
        session = self._target(target)
        async with self._lock:
            if not await tmux_bridge.session_exists(session):
                logger.warning("Cannot send input: session %s not found", session)
                return False

            preview = text[: constants.INPUT_LOG_PREVIEW_LENGTH]
            logger.debug("Sending input to %s: %s", session, preview)
            if not await tmux_bridge.send_literal(session, text):
                return False
            await asyncio.sleep(self._settings.post_text_delay)
            if not await tmux_bridge.send_key(session, "Enter"):
                return False
            await asyncio.sleep(self._settings.post_enter_delay)
            return True

    async def send_choice(
        self,
        selected_indices: Sequence[int],
        option_count: int,
        multi_select: bool,
        other_text: Optional[str] = None,
        target: Optional[str] = None,
    ) -> bool:
        """Drive the agent's selection UI to the given choice.

        Raises:
            ValueError: the selection is invalid for `option_count`.
        """
        steps = build_choice_keys(selected_indices, option_count, multi_select, other_text)
        session = self._target(target)
        async with self._lock:
            if not await tmux_bridge.session_exists(session):
                logger.warning("Cannot send choice: session %s not found", session)
                return False
            for step in steps:
                if step.kind == "pause":
                    await asyncio.sleep(self._settings.post_other_select_delay)
                    continue
                if step.kind == "text":
                    ok = await tmux_bridge.send_literal(session, step.value)
                else:
                    ok = await tmux_bridge.send_key(session, step.value)
                if not ok:
                    logger.error("Choice sequence aborted at %s %r in %s", step.kind, step.value, session)
                    return False
                await asyncio.sleep(self._settings.choice_key_delay)
            logger.debug(
                "Sent choice %s (multi=%s, other=%s) to %s",
                list(selected_indices),
                multi_select,
                bool(other_text),
                session,
            )
            return True

    async def cancel_input(self, target: Optional[str] = None) -> bool:
        return await tmux_bridge.send_interrupt(self._target(target))

    async def capture_pane_content(
        self, target: Optional[str] = None, lines: int = constants.DEFAULT_PANE_CAPTURE_LINES, offset: int = 0
    ) -> str:
        return await tmux_bridge.capture_pane(self._target(target), lines=lines, offset=offset)

    async def send_with_retry(
        self,
        operation: Callable[[], Awaitable[bool]],
        target: Optional[str] = None,
        retry_delay: Optional[float] = None,
    ) -> bool:
        """Run an injection, retrying once if it failed because the session was missing.

        Covers the window where a session is being recreated right as an
        approval arrives.
        """
        if await operation():
            return True
        if await self.check_session_exists(target):
            return False
        delay = self._settings.missing_session_retry_delay if retry_delay is None else retry_delay
        logger.info("Session %s missing, retrying in %.2fs", self._target(target), delay)
        await asyncio.sleep(delay)
        return await operation()
