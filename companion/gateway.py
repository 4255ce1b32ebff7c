"""Request dispatch for client messages.

Maps `{type, payload, requestId}` messages onto injector, tmux, git and work
group operations and returns `{type, success, payload?, error?, requestId}`.
The gateway never raises: refusals, malformed payloads and handler bugs all
come back as `success: False`.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from companion import constants
from companion.config import TmuxConfig
from companion.core import git_worktrees, tmux_bridge
from companion.core.escalation import EscalationService
from companion.core.input_injector import InputInjector
from companion.core.session_guard import SessionGuard
from companion.core.session_ids import encode_project_path
from companion.core.work_groups import SpawnWorkGroupRequest, WorkGroupError, WorkGroupManager

logger = logging.getLogger(__name__)

Payload = dict[str, object]
Response = dict[str, object]
Handler = Callable[[Payload, SessionGuard], Awaitable[object]]

TMUX_SESSION_NOT_FOUND = "tmux_session_not_found"
STALE_SESSION = "stale_session"


class GatewayError(Exception):
    """A request was understood but refused. `payload` is returned alongside the error."""

    def __init__(self, message: str, payload: Optional[Payload] = None) -> None:
        super().__init__(message)
        self.payload = payload


def _require_str(payload: Payload, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Missing {key}")
    return value


def _optional_str(payload: Payload, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _optional_int(payload: Payload, key: str, default: Optional[int] = None) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _optional_bool(payload: Payload, key: str, default: bool) -> bool:
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


class Gateway:
    """Dispatches one connection's requests. The caller owns the per-connection SessionGuard."""

    def __init__(
        self,
        injector: InputInjector,
        manager: WorkGroupManager,
        settings: Optional[TmuxConfig] = None,
        escalation: Optional[EscalationService] = None,
    ) -> None:
        self._injector = injector
        self._manager = manager
        self._settings = settings or TmuxConfig()
        self._escalation = escalation
        self._handlers: dict[str, Handler] = {
            "list_tmux_sessions": self._list_tmux_sessions,
            "create_tmux_session": self._create_tmux_session,
            "kill_tmux_session": self._kill_tmux_session,
            "switch_tmux_session": self._switch_tmux_session,
            "switch_session": self._switch_session,
            "send_input": self._send_input,
            "send_choice": self._send_choice,
            "cancel_input": self._cancel_input,
            "get_terminal_output": self._get_terminal_output,
            "create_worktree_session": self._create_worktree_session,
            "list_worktrees": self._list_worktrees,
            "spawn_work_group": self._spawn_work_group,
            "get_work_groups": self._get_work_groups,
            "get_work_group": self._get_work_group,
            "merge_work_group": self._merge_work_group,
            "cancel_work_group": self._cancel_work_group,
            "retry_worker": self._retry_worker,
            "send_worker_input": self._send_worker_input,
            "dismiss_work_group": self._dismiss_work_group,
            "get_pending_events": self._get_pending_events,
        }

    @property
    def message_types(self) -> list[str]:
        return sorted(self._handlers)

    async def handle_message(self, message: object, guard: SessionGuard) -> Response:
        """Dispatch one decoded client message and build its response."""
        if not isinstance(message, dict):
            return {"type": "error", "success": False, "error": "Message must be an object"}

        msg_type = message.get("type")
        request_id = message.get("requestId")
        response: Response = {"type": msg_type, "requestId": request_id}

        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            logger.warning("Unknown message type: %r", msg_type)
            return {**response, "success": False, "error": f"Unknown message type: {msg_type}"}

        payload = message.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return {**response, "success": False, "error": "Payload must be an object"}

        try:
            result = await handler(payload, guard)
        except GatewayError as e:
            failure: Response = {**response, "success": False, "error": str(e)}
            if e.payload is not None:
                failure["payload"] = e.payload
            return failure
        except WorkGroupError as e:
            return {**response, "success": False, "error": str(e)}
        except (KeyError, ValueError, TypeError) as e:
            logger.info("Invalid %s payload: %s", msg_type, e)
            return {**response, "success": False, "error": f"Invalid payload: {e}"}
        except Exception as e:  # noqa: BLE001 - a handler bug must not drop the connection
            logger.error("Handler for %s failed: %s", msg_type, e, exc_info=True)
            return {**response, "success": False, "error": str(e) or type(e).__name__}

        ok: Response = {**response, "success": True}
        if result is not None:
            ok["payload"] = result
        return ok

    # ==================== Session targeting ====================

    async def _resolve_target(self, payload: Payload) -> str:
        """tmuxSessionName, else the tmux session whose directory encodes to sessionId, else the active one."""
        explicit = _optional_str(payload, "tmuxSessionName")
        if explicit:
            return explicit
        session_id = _optional_str(payload, "sessionId")
        if session_id:
            for session in await tmux_bridge.list_sessions(self._settings.managed_env_var):
                if session.working_dir and encode_project_path(session.working_dir) == session_id:
                    return session.name
        return self._injector.active_session

    async def _require_session(self, target: str) -> None:
        if not await self._injector.check_session_exists(target):
            raise GatewayError(TMUX_SESSION_NOT_FOUND, {"sessionName": target})

    def _acknowledge(self, session_id: Optional[str]) -> None:
        if self._escalation is not None and session_id:
            self._escalation.acknowledge_session(session_id)

    # ==================== Tmux sessions ====================

    async def _list_tmux_sessions(self, _payload: Payload, _guard: SessionGuard) -> Payload:
        sessions = await tmux_bridge.list_sessions(self._settings.managed_env_var)
        return {
            "sessions": [session.to_dict() for session in sessions],
            "activeSession": self._injector.active_session,
            "homeDir": tmux_bridge.get_home_dir(),
        }

    async def _start_session(self, name: str, working_dir: str, start_agent: bool) -> str:
        result = await tmux_bridge.create_session(
            name,
            working_dir,
            start_agent,
            agent_command=self._settings.agent_command,
            env_var=self._settings.managed_env_var,
            settle_delay=self._settings.settle_delay,
        )
        if not result.success or not result.session_name:
            raise GatewayError(result.error or "Failed to create session")
        self._injector.set_active_session(result.session_name)
        return result.session_name

    async def _create_tmux_session(self, payload: Payload, _guard: SessionGuard) -> Payload:
        working_dir = _require_str(payload, "workingDir")
        name = _optional_str(payload, "name") or tmux_bridge.generate_session_name(
            working_dir, self._settings.session_prefix
        )
        session_name = await self._start_session(name, working_dir, _optional_bool(payload, "startAgent", True))
        return {"sessionName": session_name, "workingDir": working_dir}

    async def _kill_tmux_session(self, payload: Payload, _guard: SessionGuard) -> Payload:
        session_name = _require_str(payload, "sessionName")
        result = await tmux_bridge.kill_session(session_name)
        if not result.success:
            raise GatewayError(result.error or "Failed to kill session")
        if self._injector.active_session == session_name:
            self._injector.set_active_session(self._injector.default_session)
        return {"sessionName": session_name}

    async def _switch_tmux_session(self, payload: Payload, _guard: SessionGuard) -> Payload:
        session_name = _require_str(payload, "sessionName")
        await self._require_session(session_name)
        self._injector.set_active_session(session_name)
        await tmux_bridge.tag_session(session_name, self._settings.managed_env_var)
        return {"sessionName": session_name}

    # ==================== Conversation input ====================

    async def _switch_session(self, payload: Payload, guard: SessionGuard) -> Payload:
        session_id = _require_str(payload, "sessionId")
        epoch = guard.begin_switch(session_id, _optional_int(payload, "epoch"))
        self._acknowledge(session_id)
        return {"sessionId": session_id, "epoch": epoch}

    async def _send_input(self, payload: Payload, guard: SessionGuard) -> Payload:
        text = payload.get("input")
        if not isinstance(text, str) or not text:
            raise ValueError("Missing input")

        session_id = _optional_str(payload, "sessionId")
        epoch = _optional_int(payload, "epoch")
        if (session_id is not None or epoch is not None) and not guard.is_valid(session_id, epoch):
            current = guard.context()
            raise GatewayError(STALE_SESSION, {"sessionId": current.session_id, "epoch": current.epoch})

        target = await self._resolve_target(payload)
        await self._require_session(target)
        if not await self._injector.send_input(text, target=target):
            raise GatewayError("Failed to send input", {"sessionName": target})
        self._acknowledge(session_id or guard.session_id)
        return {"sessionName": target}

    async def _send_choice(self, payload: Payload, _guard: SessionGuard) -> Payload:
        raw_indices = payload.get("selectedIndices")
        if not isinstance(raw_indices, list) or not all(
            isinstance(i, int) and not isinstance(i, bool) for i in raw_indices
        ):
            raise ValueError("selectedIndices must be a list of integers")
        option_count = _optional_int(payload, "optionCount")
        if option_count is None:
            raise ValueError("Missing optionCount")
        multi_select = _optional_bool(payload, "multiSelect", False)
        other_text = _optional_str(payload, "otherText")
        target = await self._resolve_target(payload)

        async def _choose() -> bool:
            return await self._injector.send_choice(raw_indices, option_count, multi_select, other_text, target=target)

        if not await self._injector.send_with_retry(_choose, target=target):
            if not await self._injector.check_session_exists(target):
                raise GatewayError(TMUX_SESSION_NOT_FOUND, {"sessionName": target})
            raise GatewayError("Failed to send choice", {"sessionName": target})
        return {"sessionName": target}

    async def _cancel_input(self, payload: Payload, _guard: SessionGuard) -> Payload:
        target = await self._resolve_target(payload)
        if not await self._injector.cancel_input(target=target):
            raise GatewayError("Failed to cancel input", {"sessionName": target})
        return {"sessionName": target}

    async def _get_terminal_output(self, payload: Payload, _guard: SessionGuard) -> Payload:
        lines = _optional_int(payload, "lines", constants.DEFAULT_PANE_CAPTURE_LINES) or 0
        offset = _optional_int(payload, "offset", 0) or 0
        if lines <= 0 or offset < 0:
            raise ValueError("lines must be positive and offset non-negative")
        target = await self._resolve_target(payload)
        output = await self._injector.capture_pane_content(target=target, lines=lines, offset=offset)
        return {"output": output, "sessionName": target, "lines": lines, "offset": offset}

    # ==================== Worktrees ====================

    async def _create_worktree_session(self, payload: Payload, _guard: SessionGuard) -> Payload:
        parent_dir = _require_str(payload, "parentDir")
        if not await git_worktrees.is_git_repo_async(parent_dir):
            raise GatewayError(f"Not a git repository: {parent_dir}")

        worktree = await git_worktrees.create_worktree_async(parent_dir, _optional_str(payload, "branch"))
        if not worktree.success or not worktree.worktree_path:
            raise GatewayError(worktree.error or "Failed to create worktree")

        name = tmux_bridge.generate_session_name(worktree.worktree_path, self._settings.session_prefix)
        try:
            session_name = await self._start_session(
                name, worktree.worktree_path, _optional_bool(payload, "startAgent", True)
            )
        except GatewayError:
            await git_worktrees.remove_worktree_async(parent_dir, worktree.worktree_path)
            raise
        return {"sessionName": session_name, "worktreePath": worktree.worktree_path, "branch": worktree.branch}

    async def _list_worktrees(self, payload: Payload, _guard: SessionGuard) -> Payload:
        directory = _require_str(payload, "dir")
        worktrees = await git_worktrees.list_worktrees_async(directory)
        return {"worktrees": [worktree.to_dict() for worktree in worktrees]}

    # ==================== Work groups ====================

    async def _spawn_work_group(self, payload: Payload, _guard: SessionGuard) -> Payload:
        request = SpawnWorkGroupRequest.from_dict(payload)
        group = await self._manager.create_work_group(request)
        return group.to_dict()

    async def _get_work_groups(self, _payload: Payload, _guard: SessionGuard) -> Payload:
        return {"groups": [group.to_dict() for group in self._manager.get_work_groups()]}

    async def _get_work_group(self, payload: Payload, _guard: SessionGuard) -> Payload:
        group = self._manager.get_work_group(_require_str(payload, "groupId"))
        if group is None:
            raise GatewayError("Work group not found")
        return group.to_dict()

    async def _merge_work_group(self, payload: Payload, _guard: SessionGuard) -> Payload:
        result = await self._manager.merge_work_group(_require_str(payload, "groupId"))
        if not result.success:
            raise GatewayError(result.error or "Merge failed", {"conflicts": list(result.conflicts)})
        return {"mergeCommit": result.merge_commit}

    async def _cancel_work_group(self, payload: Payload, _guard: SessionGuard) -> None:
        result = await self._manager.cancel_work_group(_require_str(payload, "groupId"))
        if not result.success:
            raise GatewayError(result.error or "Cancel failed")

    async def _retry_worker(self, payload: Payload, _guard: SessionGuard) -> None:
        result = await self._manager.retry_worker(_require_str(payload, "groupId"), _require_str(payload, "workerId"))
        if not result.success:
            raise GatewayError(result.error or "Retry failed")

    async def _send_worker_input(self, payload: Payload, _guard: SessionGuard) -> None:
        result = await self._manager.send_worker_input(
            _require_str(payload, "groupId"), _require_str(payload, "workerId"), _require_str(payload, "text")
        )
        if not result.success:
            raise GatewayError(result.error or "Failed to send input")

    async def _dismiss_work_group(self, payload: Payload, _guard: SessionGuard) -> None:
        result = await self._manager.dismiss_work_group(_require_str(payload, "groupId"))
        if not result.success:
            raise GatewayError(result.error or "Dismiss failed")

    async def _get_pending_events(self, _payload: Payload, _guard: SessionGuard) -> Payload:
        if self._escalation is None:
            return {"events": []}
        return {"events": [event.to_dict() for event in self._escalation.get_pending_events()]}
