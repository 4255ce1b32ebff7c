"""Event names and payloads carried on the in-process event bus."""

from dataclasses import dataclass
from typing import Literal, Optional, Union

from companion.core.models import SessionStatusEvent, WorkerQuestion, WorkGroup

EventType = Literal[
    "session_status",
    "work_group_update",
    "worker_waiting",
    "worker_error",
    "group_ready_to_merge",
]


class CompanionEvents:
    """Events emitted by the watcher feed and the work group manager."""

    SESSION_STATUS: Literal["session_status"] = "session_status"
    WORK_GROUP_UPDATE: Literal["work_group_update"] = "work_group_update"
    WORKER_WAITING: Literal["worker_waiting"] = "worker_waiting"
    WORKER_ERROR: Literal["worker_error"] = "worker_error"
    GROUP_READY_TO_MERGE: Literal["group_ready_to_merge"] = "group_ready_to_merge"


@dataclass
class WorkGroupUpdateContext:
    group: WorkGroup


@dataclass
class WorkerWaitingContext:
    group_id: str
    group_name: str
    worker_id: str
    task_slug: str
    session_id: str
    question: Optional[WorkerQuestion]


@dataclass
class WorkerErrorContext:
    group_id: str
    group_name: str
    worker_id: str
    task_slug: str
    session_id: str
    error: str


@dataclass
class GroupReadyContext:
    group_id: str
    group_name: str
    foreman_session_id: str
    completed: int
    failed: int


EventContext = Union[
    SessionStatusEvent,
    WorkGroupUpdateContext,
    WorkerWaitingContext,
    WorkerErrorContext,
    GroupReadyContext,
]
