"""Unit tests for client message dispatch."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from companion.config import TmuxConfig
from companion.core import git_worktrees, tmux_bridge
from companion.core.escalation import EscalationService
from companion.core.models import (
    MergeResult,
    OperationResult,
    SessionResult,
    TmuxSessionInfo,
    WorkGroup,
    WorktreeResult,
)
from companion.core.session_guard import SessionGuard
from companion.core.work_groups import WorkGroupError
from companion.gateway import STALE_SESSION, TMUX_SESSION_NOT_FOUND, Gateway


@pytest.fixture
def injector():
    mock = MagicMock()
    mock.active_session = "companion"
    mock.default_session = "companion"
    mock.check_session_exists = AsyncMock(return_value=True)
    mock.send_input = AsyncMock(return_value=True)
    mock.send_choice = AsyncMock(return_value=True)
    mock.cancel_input = AsyncMock(return_value=True)
    mock.capture_pane_content = AsyncMock(return_value="pane text")

    async def send_with_retry(operation, target=None, retry_delay=None):
        return await operation()

    mock.send_with_retry = AsyncMock(side_effect=send_with_retry)
    return mock


@pytest.fixture
def manager():
    return MagicMock()


@pytest.fixture
def escalation():
    service = MagicMock(spec=EscalationService)
    service.get_pending_events.return_value = []
    return service


@pytest.fixture
def gateway(injector, manager, escalation):
    return Gateway(injector, manager, settings=TmuxConfig(settle_delay=0), escalation=escalation)


@pytest.fixture
def guard():
    return SessionGuard()


async def _call(gateway, guard, msg_type, payload=None, request_id="r1"):
    message = {"type": msg_type, "requestId": request_id}
    if payload is not None:
        message["payload"] = payload
    return await gateway.handle_message(message, guard)


@pytest.mark.asyncio
async def test_unknown_type_is_refused(gateway, guard):
    response = await _call(gateway, guard, "reboot_universe")
    assert response == {
        "type": "reboot_universe",
        "requestId": "r1",
        "success": False,
        "error": "Unknown message type: reboot_universe",
    }


@pytest.mark.asyncio
async def test_non_object_message_and_payload(gateway, guard):
    assert (await gateway.handle_message(["nope"], guard))["success"] is False
    response = await gateway.handle_message({"type": "send_input", "payload": "text"}, guard)
    assert response["error"] == "Payload must be an object"


@pytest.mark.asyncio
async def test_malformed_payload_is_reported(gateway, guard):
    response = await _call(gateway, guard, "send_choice", {"selectedIndices": "0", "optionCount": 2})
    assert response["success"] is False
    assert response["error"].startswith("Invalid payload:")


@pytest.mark.asyncio
async def test_handler_bug_does_not_escape(gateway, guard, manager):
    manager.get_work_groups.side_effect = RuntimeError("kaboom")
    response = await _call(gateway, guard, "get_work_groups")
    assert response == {"type": "get_work_groups", "requestId": "r1", "success": False, "error": "kaboom"}


# ==================== Session switching and input fencing ====================


@pytest.mark.asyncio
async def test_switch_session_bumps_epoch_and_acknowledges(gateway, guard, escalation):
    first = await _call(gateway, guard, "switch_session", {"sessionId": "a"})
    second = await _call(gateway, guard, "switch_session", {"sessionId": "b", "epoch": 7})

    assert first["payload"] == {"sessionId": "a", "epoch": 1}
    assert second["payload"] == {"sessionId": "b", "epoch": 7}
    escalation.acknowledge_session.assert_called_with("b")


@pytest.mark.asyncio
async def test_send_input_for_stale_session_is_rejected(gateway, guard, injector):
    guard.begin_switch("a")
    guard.begin_switch("b")

    response = await _call(gateway, guard, "send_input", {"input": "hi", "sessionId": "a", "epoch": 1})

    assert response["success"] is False
    assert response["error"] == STALE_SESSION
    assert response["payload"] == {"sessionId": "b", "epoch": 2}
    injector.send_input.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_input_to_current_session(gateway, guard, injector, escalation):
    guard.begin_switch("b")

    with patch.object(tmux_bridge, "list_sessions", new=AsyncMock(return_value=[])):
        response = await _call(gateway, guard, "send_input", {"input": "hi", "sessionId": "b", "epoch": 1})

    assert response["success"] is True
    assert response["payload"] == {"sessionName": "companion"}
    injector.send_input.assert_awaited_once_with("hi", target="companion")
    escalation.acknowledge_session.assert_called_with("b")


@pytest.mark.asyncio
async def test_send_input_missing_tmux_session(gateway, guard, injector):
    injector.check_session_exists = AsyncMock(return_value=False)

    response = await _call(gateway, guard, "send_input", {"input": "hi", "tmuxSessionName": "gone"})

    assert response["error"] == TMUX_SESSION_NOT_FOUND
    assert response["payload"] == {"sessionName": "gone"}


@pytest.mark.asyncio
async def test_send_input_resolves_session_id_to_tmux_session(gateway, guard, injector):
    sessions = [
        TmuxSessionInfo("other", datetime.now(timezone.utc), False, 1, working_dir="/work/other"),
        TmuxSessionInfo("mine", datetime.now(timezone.utc), False, 1, working_dir="/work/my_app"),
    ]
    with patch.object(tmux_bridge, "list_sessions", new=AsyncMock(return_value=sessions)):
        response = await _call(gateway, guard, "send_input", {"input": "hi", "sessionId": "-work-my-app"})

    assert response["payload"] == {"sessionName": "mine"}


@pytest.mark.asyncio
async def test_send_choice_passes_selection(gateway, guard, injector):
    response = await _call(
        gateway,
        guard,
        "send_choice",
        {"selectedIndices": [0, 2], "optionCount": 3, "multiSelect": True, "tmuxSessionName": "w1"},
    )

    assert response["success"] is True
    injector.send_choice.assert_awaited_once_with([0, 2], 3, True, None, target="w1")


@pytest.mark.asyncio
async def test_send_choice_missing_session(gateway, guard, injector):
    injector.send_choice = AsyncMock(return_value=False)
    injector.check_session_exists = AsyncMock(return_value=False)

    response = await _call(gateway, guard, "send_choice", {"selectedIndices": [0], "optionCount": 2})

    assert response["error"] == TMUX_SESSION_NOT_FOUND


@pytest.mark.asyncio
async def test_get_terminal_output(gateway, guard, injector):
    response = await _call(gateway, guard, "get_terminal_output", {"lines": 30, "offset": 5})

    assert response["payload"] == {"output": "pane text", "sessionName": "companion", "lines": 30, "offset": 5}
    injector.capture_pane_content.assert_awaited_once_with(target="companion", lines=30, offset=5)


# ==================== Tmux sessions and worktrees ====================


@pytest.mark.asyncio
async def test_create_tmux_session_makes_it_active(gateway, guard, injector, tmp_path):
    create = AsyncMock(return_value=SessionResult(success=True, session_name="proj"))
    with patch.object(tmux_bridge, "create_session", new=create):
        response = await _call(gateway, guard, "create_tmux_session", {"workingDir": str(tmp_path), "name": "proj"})

    assert response["payload"] == {"sessionName": "proj", "workingDir": str(tmp_path)}
    injector.set_active_session.assert_called_once_with("proj")


@pytest.mark.asyncio
async def test_kill_active_session_falls_back_to_default(gateway, guard, injector):
    injector.active_session = "proj"
    with patch.object(tmux_bridge, "kill_session", new=AsyncMock(return_value=OperationResult(success=True))):
        response = await _call(gateway, guard, "kill_tmux_session", {"sessionName": "proj"})

    assert response["success"] is True
    injector.set_active_session.assert_called_once_with("companion")


@pytest.mark.asyncio
async def test_worktree_session_rolls_back_worktree_when_session_fails(gateway, guard, tmp_path):
    worktree = WorktreeResult(success=True, worktree_path=str(tmp_path / "wt"), branch="companion-abc")
    remove = AsyncMock(return_value=OperationResult(success=True))
    with (
        patch.object(git_worktrees, "is_git_repo_async", new=AsyncMock(return_value=True)),
        patch.object(git_worktrees, "create_worktree_async", new=AsyncMock(return_value=worktree)),
        patch.object(git_worktrees, "remove_worktree_async", new=remove),
        patch.object(
            tmux_bridge, "create_session", new=AsyncMock(return_value=SessionResult(success=False, error="no tmux"))
        ),
    ):
        response = await _call(gateway, guard, "create_worktree_session", {"parentDir": str(tmp_path)})

    assert response["success"] is False
    assert response["error"] == "no tmux"
    remove.assert_awaited_once_with(str(tmp_path), str(tmp_path / "wt"))


@pytest.mark.asyncio
async def test_worktree_session_requires_git_repo(gateway, guard, tmp_path):
    with patch.object(git_worktrees, "is_git_repo_async", new=AsyncMock(return_value=False)):
        response = await _call(gateway, guard, "create_worktree_session", {"parentDir": str(tmp_path)})

    assert response["error"] == f"Not a git repository: {tmp_path}"


# ==================== Work groups ====================


@pytest.mark.asyncio
async def test_spawn_work_group_returns_group(gateway, guard, manager):
    group = WorkGroup(id="g1", name="Sprint", foreman_session_id="f")
    manager.create_work_group = AsyncMock(return_value=group)

    response = await _call(
        gateway,
        guard,
        "spawn_work_group",
        {"name": "Sprint", "foremanSessionId": "f", "parentDir": "/repo", "workers": [{"taskSlug": "api"}]},
    )

    assert response["payload"]["id"] == "g1"
    request = manager.create_work_group.await_args.args[0]
    assert request.workers[0].task_slug == "api"


@pytest.mark.asyncio
async def test_spawn_work_group_refusal(gateway, guard, manager):
    manager.create_work_group = AsyncMock(side_effect=WorkGroupError("Git integration is disabled"))

    response = await _call(
        gateway, guard, "spawn_work_group", {"name": "S", "parentDir": "/repo", "workers": [{"taskSlug": "a"}]}
    )

    assert response["error"] == "Git integration is disabled"


@pytest.mark.asyncio
async def test_merge_conflict_reports_files(gateway, guard, manager):
    manager.merge_work_group = AsyncMock(
        return_value=MergeResult(success=False, error="Merge conflict in: app.py", conflicts=["app.py"])
    )

    response = await _call(gateway, guard, "merge_work_group", {"groupId": "g1"})

    assert response["success"] is False
    assert response["error"] == "Merge conflict in: app.py"
    assert response["payload"] == {"conflicts": ["app.py"]}


@pytest.mark.asyncio
async def test_merge_success_returns_commit(gateway, guard, manager):
    manager.merge_work_group = AsyncMock(return_value=MergeResult(success=True, merge_commit="abc"))
    response = await _call(gateway, guard, "merge_work_group", {"groupId": "g1"})
    assert response["payload"] == {"mergeCommit": "abc"}


@pytest.mark.asyncio
async def test_get_unknown_work_group(gateway, guard, manager):
    manager.get_work_group.return_value = None
    response = await _call(gateway, guard, "get_work_group", {"groupId": "nope"})
    assert response["error"] == "Work group not found"


@pytest.mark.asyncio
async def test_simple_work_group_operations_have_no_payload(gateway, guard, manager):
    manager.cancel_work_group = AsyncMock(return_value=OperationResult(success=True))
    response = await _call(gateway, guard, "cancel_work_group", {"groupId": "g1"})
    assert response == {"type": "cancel_work_group", "requestId": "r1", "success": True}


@pytest.mark.asyncio
async def test_pending_events(gateway, guard):
    response = await _call(gateway, guard, "get_pending_events")
    assert response["payload"] == {"events": []}


def test_message_types_cover_all_operations(gateway):
    assert "send_input" in gateway.message_types
    assert "dismiss_work_group" in gateway.message_types
    assert len(gateway.message_types) == 20
