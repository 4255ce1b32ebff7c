"""Tmux bridge - process control for tmux sessions.

All functions are stateless. Every tmux invocation runs through `run_tmux`,
which enforces a timeout so a wedged tmux server becomes a failure, never a
hang. Public functions never raise: failures come back as False, an empty
string, or an OperationResult with `error` set.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from companion import constants
from companion.core.models import OperationResult, SessionResult, TmuxSessionInfo
from companion.utils import to_base36

logger = logging.getLogger(__name__)

SUBPROCESS_TIMEOUT_QUICK = 2.0
SUBPROCESS_TIMEOUT_DEFAULT = constants.TMUX_OPERATION_TIMEOUT_S

# Default for run_tmux, replaced from the tmux settings at daemon start
_operation_timeout = SUBPROCESS_TIMEOUT_DEFAULT

_TMUX_BINARY = os.getenv("COMPANION_TMUX_BINARY", "tmux")
_LIST_FORMAT = "#{session_name}|#{session_created}|#{session_attached}|#{session_windows}"


class SubprocessTimeoutError(Exception):
    """A subprocess did not finish within its timeout and was killed."""

    def __init__(self, operation: str, timeout: float, pid: Optional[int]) -> None:
        self.operation = operation
        self.timeout = timeout
        self.pid = pid
        super().__init__(f"{operation} timed out after {timeout}s (pid={pid})")


@dataclass
class TmuxResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def _kill_and_reap(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


async def wait_with_timeout(process: asyncio.subprocess.Process, timeout: float, operation: str) -> None:
    """Wait for a process, killing it when the timeout expires."""
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error("%s timed out after %.1fs, killing pid %s", operation, timeout, process.pid)
        await _kill_and_reap(process)
        raise SubprocessTimeoutError(operation, timeout, process.pid) from e


async def communicate_with_timeout(
    process: asyncio.subprocess.Process,
    input_data: Optional[bytes],
    timeout: float,
    operation: str,
) -> tuple[bytes, bytes]:
    """Communicate with a process, killing it when the timeout expires."""
    try:
        return await asyncio.wait_for(process.communicate(input_data), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error("%s timed out after %.1fs, killing pid %s", operation, timeout, process.pid)
        await _kill_and_reap(process)
        raise SubprocessTimeoutError(operation, timeout, process.pid) from e


def set_operation_timeout(seconds: float) -> None:
    global _operation_timeout  # pylint: disable=global-statement
    _operation_timeout = seconds


async def run_tmux(*args: str, timeout: Optional[float] = None) -> TmuxResult:
    """Run one tmux command and capture its output.

    `timeout` defaults to the configured tmux operation timeout.

    Raises:
        SubprocessTimeoutError: tmux did not finish within `timeout`.
        OSError: the tmux binary could not be started.
    """
    process = await asyncio.create_subprocess_exec(
        _TMUX_BINARY,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    operation = f"tmux {args[0]}" if args else "tmux"
    if timeout is None:
        timeout = _operation_timeout
    stdout, stderr = await communicate_with_timeout(process, None, timeout, operation)
    return TmuxResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )


async def _run_quietly(*args: str, timeout: Optional[float] = None) -> Optional[TmuxResult]:
    """run_tmux that logs and swallows spawn/timeout failures (returns None)."""
    try:
        return await run_tmux(*args, timeout=timeout)
    except (SubprocessTimeoutError, OSError) as e:
        logger.error("tmux %s failed: %s", " ".join(args[:1]), e)
        return None


def sanitize_session_name(name: str) -> str:
    """Replace anything tmux target syntax could misread."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


def generate_session_name(working_dir: str, prefix: str = constants.DEFAULT_SESSION_PREFIX) -> str:
    """Unique session name derived from the directory name and the current time."""
    dir_name = Path(working_dir.rstrip("/")).name or "session"
    stamp = to_base36(int(time.time() * 1000))
    return f"{prefix}-{sanitize_session_name(dir_name)}-{stamp}"


def get_home_dir() -> str:
    return os.getenv("HOME") or str(Path.home())


async def session_exists(session_name: str) -> bool:
    """Check if a tmux session exists.

    Args:
        session_name: Session name

    Returns:
        True if session exists, False otherwise (including when tmux fails)
    """
    result = await _run_quietly("has-session", "-t", session_name, timeout=SUBPROCESS_TIMEOUT_QUICK)
    if result is None:
        return False
    if not result.ok:
        logger.debug("Session %s does not exist: %s", session_name, result.stderr)
    return result.ok


async def get_working_dir(session_name: str) -> Optional[str]:
    result = await _run_quietly("display-message", "-t", session_name, "-p", "#{pane_current_path}")
    if result is None or not result.ok:
        return None
    path = result.stdout.strip()
    return path or None


async def is_tagged(session_name: str, env_var: str = constants.MANAGED_SESSION_ENV_VAR) -> bool:
    """True if the session carries the daemon's management tag."""
    result = await _run_quietly("show-environment", "-t", session_name, env_var, timeout=SUBPROCESS_TIMEOUT_QUICK)
    if result is None or not result.ok:
        return False
    return result.stdout.strip() == f"{env_var}=1"


async def tag_session(session_name: str, env_var: str = constants.MANAGED_SESSION_ENV_VAR) -> bool:
    """Mark a session as managed by this daemon (adopts sessions created elsewhere)."""
    result = await _run_quietly("set-environment", "-t", session_name, env_var, "1")
    if result is None or not result.ok:
        logger.warning("Failed to tag session %s: %s", session_name, result.stderr if result else "tmux error")
        return False
    return True


async def list_sessions(env_var: str = constants.MANAGED_SESSION_ENV_VAR) -> list[TmuxSessionInfo]:
    """List all tmux sessions, tagged or not, so a human can drive any of them.

    Returns:
        Sessions annotated with working directory and tag status. Empty when
        no tmux server is running.
    """
    result = await _run_quietly("list-sessions", "-F", _LIST_FORMAT)
    if result is None or not result.ok:
        return []

    sessions: list[TmuxSessionInfo] = []
    for line in result.stdout.strip().splitlines():
        parts = line.split("|")
        if len(parts) != 4 or not parts[0]:
            continue
        name, created, attached, windows = parts
        try:
            created_at = datetime.fromtimestamp(int(created), tz=timezone.utc)
            window_count = int(windows)
        except ValueError:
            logger.debug("Skipping unparseable tmux session line: %s", line)
            continue
        sessions.append(
            TmuxSessionInfo(
                name=name,
                created_at=created_at,
                attached=attached not in ("", "0"),
                windows=window_count,
            )
        )

    for session in sessions:
        session.working_dir = await get_working_dir(session.name)
        session.tagged = await is_tagged(session.name, env_var)

    return sessions


async def send_literal(session_name: str, text: str) -> bool:
    """Type text into a pane without tmux key-name interpretation."""
    result = await _run_quietly("send-keys", "-t", session_name, "-l", "--", text)
    if result is None or not result.ok:
        logger.error("Failed to send text to %s: %s", session_name, result.stderr if result else "tmux error")
        return False
    return True


async def send_key(session_name: str, key: str) -> bool:
    """Send one named key (Enter, Down, Space, C-c, ...)."""
    result = await _run_quietly("send-keys", "-t", session_name, key)
    if result is None or not result.ok:
        logger.error("Failed to send %s to %s: %s", key, session_name, result.stderr if result else "tmux error")
        return False
    return True


async def send_interrupt(session_name: str) -> bool:
    return await send_key(session_name, "C-c")


async def capture_pane(session_name: str, lines: int = 50, offset: int = 0) -> str:
    """Capture pane text for status inference.

    Args:
        session_name: Session name
        lines: Number of lines to return
        offset: Lines to skip back from the bottom of the pane (0 = most recent)

    Returns:
        Captured text, or "" on any failure
    """
    cmd = ["capture-pane", "-t", session_name, "-p", "-J", "-S", f"-{lines + offset}"]
    if offset > 0:
        cmd.extend(["-E", f"-{offset + 1}"])
    result = await _run_quietly(*cmd)
    if result is None:
        return ""
    if not result.ok:
        logger.warning("Failed to capture pane from %s: %s", session_name, result.stderr)
        return ""
    return result.stdout


async def create_session(
    name: str,
    working_dir: str,
    start_agent: bool = True,
    *,
    agent_command: str = constants.DEFAULT_AGENT_COMMAND,
    env_var: str = constants.MANAGED_SESSION_ENV_VAR,
    settle_delay: float = constants.SESSION_SETTLE_DELAY_S,
) -> SessionResult:
    """Create a detached, tagged tmux session and optionally launch the agent.

    Args:
        name: Requested session name (sanitized)
        working_dir: Initial working directory
        start_agent: Type `agent_command` + Enter once the shell has settled

    Returns:
        SessionResult with the sanitized `session_name` on success
    """
    safe_name = sanitize_session_name(name)
    if not safe_name:
        return SessionResult(success=False, error="Session name is empty")
    if not Path(working_dir).is_dir():
        return SessionResult(success=False, error=f"Directory does not exist: {working_dir}")
    if await session_exists(safe_name):
        return SessionResult(success=False, error=f'Session "{safe_name}" already exists')

    try:
        result = await run_tmux("new-session", "-d", "-s", safe_name, "-c", working_dir)
    except (SubprocessTimeoutError, OSError) as e:
        logger.error("Failed to create session %s: %s", safe_name, e)
        return SessionResult(success=False, error=str(e))
    if not result.ok:
        logger.error("Failed to create session %s: %s", safe_name, result.stderr)
        return SessionResult(success=False, error=result.stderr or "tmux new-session failed")

    logger.info("Created session %s in %s", safe_name, working_dir)
    await tag_session(safe_name, env_var)

    if start_agent:
        # Shell prompt must be up before the launch command is typed
        await asyncio.sleep(settle_delay)
        if not await send_literal(safe_name, agent_command) or not await send_key(safe_name, "Enter"):
            return SessionResult(success=False, error="Failed to start agent", session_name=safe_name)
        logger.info("Started %s in session %s", agent_command, safe_name)

    return SessionResult(success=True, session_name=safe_name)


async def kill_session(
    session_name: str,
    *,
    interrupt_wait: float = constants.KILL_INTERRUPT_WAIT_S,
    eof_wait: float = constants.KILL_EOF_WAIT_S,
    exit_wait: float = constants.KILL_EXIT_WAIT_S,
) -> OperationResult:
    """Stop a session gracefully, force-killing only if it survives.

    Order: interrupt, EOF, shell `exit`, kill-session. A program mid-operation
    may swallow a bare `exit`; EOF works in any input mode.
    """
    if not await session_exists(session_name):
        return OperationResult(success=False, error=f'Session "{session_name}" not found')

    await send_key(session_name, "C-c")
    await asyncio.sleep(interrupt_wait)
    await send_key(session_name, "C-d")
    await asyncio.sleep(eof_wait)

    if await session_exists(session_name):
        await send_literal(session_name, "exit")
        await send_key(session_name, "Enter")
        await asyncio.sleep(exit_wait)

    if not await session_exists(session_name):
        logger.info("Session %s exited gracefully", session_name)
        return OperationResult(success=True)

    try:
        result = await run_tmux("kill-session", "-t", session_name)
    except (SubprocessTimeoutError, OSError) as e:
        logger.error("Failed to kill session %s: %s", session_name, e)
        return OperationResult(success=False, error=str(e))

    if not result.ok and await session_exists(session_name):
        logger.error("Failed to kill session %s: %s", session_name, result.stderr)
        return OperationResult(success=False, error=result.stderr or "tmux kill-session failed")

    logger.info("Force killed session %s", session_name)
    return OperationResult(success=True)
