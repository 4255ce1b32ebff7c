"""Unit tests for work group models and their JSON snapshot store."""

import json
from datetime import datetime, timezone

from companion.core.models import (
    SessionStatusEvent,
    WorkerQuestion,
    WorkerSession,
    WorkerStatus,
    WorkGroup,
    WorkGroupStatus,
)
from companion.core.work_group_store import WorkGroupStore


def _group() -> WorkGroup:
    worker = WorkerSession(
        id="w1",
        task_slug="add-auth",
        task_description="Add auth",
        branch="parallel/add-auth",
        status=WorkerStatus.WAITING,
        session_id="-repo-wt-parallel-add-auth",
        tmux_session_name="companion-repo-abc",
        worktree_path="/repo-wt-parallel-add-auth",
        commits=["abc123"],
        last_question=WorkerQuestion(text="Which?", options=["a", "b"]),
        plan_section="### Auth",
        files=["auth.py"],
    )
    return WorkGroup(
        id="g1",
        name="Sprint",
        foreman_session_id="foreman",
        workers=[worker],
        repo_dir="/repo",
        created_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
    )


def test_save_then_load_preserves_group(tmp_path):
    store = WorkGroupStore(tmp_path / "work-groups.json")
    store.save([_group()])

    loaded = store.load()

    group = loaded["g1"]
    assert group.status is WorkGroupStatus.ACTIVE
    assert group.created_at == datetime(2026, 1, 2, tzinfo=timezone.utc)
    worker = group.workers[0]
    assert worker.status is WorkerStatus.WAITING
    assert worker.last_question is not None and worker.last_question.options == ["a", "b"]
    assert worker.files == ["auth.py"]
    assert worker.plan_section == "### Auth"
    assert not (tmp_path / "work-groups.tmp").exists()


def test_snapshot_uses_camel_case_keys(tmp_path):
    path = tmp_path / "work-groups.json"
    WorkGroupStore(path).save([_group()])

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data[0]["foremanSessionId"] == "foreman"
    assert data[0]["workers"][0]["tmuxSessionName"] == "companion-repo-abc"
    assert data[0]["workers"][0]["lastQuestion"]["options"] == [{"label": "a"}, {"label": "b"}]


def test_missing_file_loads_empty(tmp_path):
    assert WorkGroupStore(tmp_path / "absent.json").load() == {}


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "work-groups.json"
    path.write_text("{not json", encoding="utf-8")
    assert WorkGroupStore(path).load() == {}


def test_non_list_snapshot_loads_empty(tmp_path):
    path = tmp_path / "work-groups.json"
    path.write_text('{"id": "g1"}', encoding="utf-8")
    assert WorkGroupStore(path).load() == {}


def test_non_object_items_load_empty(tmp_path):
    path = tmp_path / "work-groups.json"
    path.write_text('["not-a-group"]', encoding="utf-8")
    assert WorkGroupStore(path).load() == {}

    data = _group().to_dict()
    data["workers"] = ["not-a-worker"]
    path.write_text(json.dumps([data]), encoding="utf-8")
    assert WorkGroupStore(path).load() == {}


def test_unknown_status_loads_empty(tmp_path):
    path = tmp_path / "work-groups.json"
    data = _group().to_dict()
    data["status"] = "exploded"
    path.write_text(json.dumps([data]), encoding="utf-8")
    assert WorkGroupStore(path).load() == {}


def test_session_status_event_accepts_message_object_or_string():
    event = SessionStatusEvent.from_dict(
        {"sessionId": "s1", "isWaitingForInput": True, "lastMessage": {"content": "Which?"}}
    )
    assert event.last_message == "Which?"
    assert event.is_waiting_for_input is True

    event = SessionStatusEvent.from_dict({"sessionId": "s1", "lastMessage": "plain"})
    assert event.last_message == "plain"
    assert event.is_waiting_for_input is False


def test_terminal_and_dismissable_states():
    assert WorkerStatus.COMPLETED.is_terminal and WorkerStatus.ERROR.is_terminal
    assert not WorkerStatus.WAITING.is_terminal
    assert WorkGroupStatus.CANCELLED.is_dismissable
    assert not WorkGroupStatus.MERGING.is_dismissable
