"""Data models for tmux sessions, worktrees and work groups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from typing_extensions import TypedDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    return datetime.fromisoformat(value)


def _opt_str(data: dict[str, object], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


class WorkerStatus(str, Enum):
    """Worker life cycle state."""

    SPAWNING = "spawning"
    WORKING = "working"
    WAITING = "waiting"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkerStatus.COMPLETED, WorkerStatus.ERROR)


class WorkGroupStatus(str, Enum):
    """Work group life cycle state."""

    ACTIVE = "active"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_dismissable(self) -> bool:
        return self in (WorkGroupStatus.COMPLETED, WorkGroupStatus.FAILED, WorkGroupStatus.CANCELLED)


# Result objects. Substrate operations report failures through these instead of raising.


@dataclass
class OperationResult:
    success: bool
    error: Optional[str] = None


@dataclass
class SessionResult(OperationResult):
    session_name: Optional[str] = None


@dataclass
class WorktreeResult(OperationResult):
    worktree_path: Optional[str] = None
    branch: Optional[str] = None


@dataclass
class MergeResult(OperationResult):
    merge_commit: Optional[str] = None
    conflicts: list[str] = field(default_factory=list)


@dataclass
class TmuxSessionInfo:
    """A tmux session as seen by `tmux list-sessions`."""

    name: str
    created_at: datetime
    attached: bool
    windows: int
    working_dir: Optional[str] = None
    tagged: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "createdAt": _iso(self.created_at),
            "attached": self.attached,
            "windows": self.windows,
            "workingDir": self.working_dir,
            "tagged": self.tagged,
        }


@dataclass
class Worktree:
    path: str
    branch: Optional[str]
    is_main: bool

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "branch": self.branch, "isMain": self.is_main}


@dataclass
class SessionStatusEvent:
    """Status update for one conversation session, produced by the transcript watcher."""

    session_id: str
    is_waiting_for_input: bool = False
    last_message: Optional[str] = None
    current_activity: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> SessionStatusEvent:
        last_message = data.get("lastMessage")
        content: Optional[str] = None
        if isinstance(last_message, dict):
            raw_content = last_message.get("content")
            content = raw_content if isinstance(raw_content, str) else None
        elif isinstance(last_message, str):
            content = last_message
        activity = data.get("currentActivity")
        return cls(
            session_id=str(data.get("sessionId") or ""),
            is_waiting_for_input=bool(data.get("isWaitingForInput")),
            last_message=content,
            current_activity=activity if isinstance(activity, str) else None,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "sessionId": self.session_id,
            "isWaitingForInput": self.is_waiting_for_input,
            "lastMessage": {"content": self.last_message} if self.last_message is not None else None,
            "currentActivity": self.current_activity,
        }


class QuestionOptionDict(TypedDict):
    label: str


class WorkerQuestionDict(TypedDict, total=False):
    text: str
    options: list[QuestionOptionDict] | None
    timestamp: str | None


@dataclass
class WorkerQuestion:
    """Question a worker is waiting on, extracted from its last message."""

    text: str
    options: Optional[list[str]] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> WorkerQuestionDict:
        return {
            "text": self.text,
            "options": [{"label": label} for label in self.options] if self.options else None,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: WorkerQuestionDict) -> WorkerQuestion:
        options = data.get("options")
        return cls(
            text=data["text"],
            options=[opt["label"] for opt in options] if options else None,
            timestamp=_parse_iso(data.get("timestamp")) or utc_now(),
        )


@dataclass
class WorkerSession:  # pylint: disable=too-many-instance-attributes  # Persisted record
    """One agent instance working on one task in its own worktree."""

    id: str
    task_slug: str
    task_description: str
    branch: str
    status: WorkerStatus = WorkerStatus.SPAWNING
    session_id: str = ""
    tmux_session_name: str = ""
    worktree_path: str = ""
    commits: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    last_activity: Optional[str] = None
    last_question: Optional[WorkerQuestion] = None
    error: Optional[str] = None
    # Original spawn request, kept so a retry re-sends the full prompt
    plan_section: str = ""
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "tmuxSessionName": self.tmux_session_name,
            "taskSlug": self.task_slug,
            "taskDescription": self.task_description,
            "branch": self.branch,
            "worktreePath": self.worktree_path,
            "status": self.status.value,
            "commits": list(self.commits),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "lastActivity": self.last_activity,
            "lastQuestion": self.last_question.to_dict() if self.last_question else None,
            "error": self.error,
            "planSection": self.plan_section,
            "files": list(self.files),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> WorkerSession:
        if not isinstance(data, dict):
            raise TypeError(f"expected a worker object, got {type(data).__name__}")
        question = data.get("lastQuestion")
        commits = data.get("commits") or []
        files = data.get("files") or []
        return cls(
            id=str(data["id"]),
            session_id=str(data.get("sessionId") or ""),
            tmux_session_name=str(data.get("tmuxSessionName") or ""),
            task_slug=str(data["taskSlug"]),
            task_description=str(data.get("taskDescription") or ""),
            branch=str(data["branch"]),
            worktree_path=str(data.get("worktreePath") or ""),
            status=WorkerStatus(data["status"]),
            commits=[str(c) for c in commits] if isinstance(commits, list) else [],
            started_at=_parse_iso(data.get("startedAt")) or utc_now(),
            completed_at=_parse_iso(data.get("completedAt")),
            last_activity=_opt_str(data, "lastActivity"),
            last_question=WorkerQuestion.from_dict(question) if isinstance(question, dict) else None,  # type: ignore
            error=_opt_str(data, "error"),
            plan_section=str(data.get("planSection") or ""),
            files=[str(f) for f in files] if isinstance(files, list) else [],
        )


@dataclass
class WorkGroup:  # pylint: disable=too-many-instance-attributes  # Persisted record
    """A set of workers spawned together from one foreman session."""

    id: str
    name: str
    foreman_session_id: str
    workers: list[WorkerSession] = field(default_factory=list)
    status: WorkGroupStatus = WorkGroupStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    merge_commit: Optional[str] = None
    error: Optional[str] = None
    foreman_tmux_session: Optional[str] = None
    repo_dir: Optional[str] = None
    plan_file: Optional[str] = None

    @property
    def all_workers_terminal(self) -> bool:
        return all(worker.status.is_terminal for worker in self.workers)

    def find_worker(self, worker_id: str) -> Optional[WorkerSession]:
        return next((w for w in self.workers if w.id == worker_id), None)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "foremanSessionId": self.foreman_session_id,
            "foremanTmuxSession": self.foreman_tmux_session,
            "repoDir": self.repo_dir,
            "planFile": self.plan_file,
            "workers": [worker.to_dict() for worker in self.workers],
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
            "mergeCommit": self.merge_commit,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> WorkGroup:
        if not isinstance(data, dict):
            raise TypeError(f"expected a group object, got {type(data).__name__}")
        workers = data.get("workers") or []
        if not isinstance(workers, list):
            raise ValueError("workers must be a list")

        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            foreman_session_id=str(data.get("foremanSessionId") or ""),
            foreman_tmux_session=_opt_str(data, "foremanTmuxSession"),
            repo_dir=_opt_str(data, "repoDir"),
            plan_file=_opt_str(data, "planFile"),
            workers=[WorkerSession.from_dict(w) for w in workers],
            status=WorkGroupStatus(data["status"]),
            created_at=_parse_iso(data.get("createdAt")) or utc_now(),
            completed_at=_parse_iso(data.get("completedAt")),
            merge_commit=_opt_str(data, "mergeCommit"),
            error=_opt_str(data, "error"),
        )
