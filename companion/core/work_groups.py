"""Work group orchestration.

A work group is a set of agent workers spawned from one foreman session, each
in its own git worktree and tmux session, whose branches are merged back in a
single octopus merge. Worker progress is inferred from the watcher's status
events (see worker_inference) plus a periodic liveness check, because the
agents expose no status API of their own.

State machine:
    worker: spawning -> working <-> waiting -> completed
            any non-terminal -> error
    group:  active -> merging -> completed
                      merging -> active (merge failed, retry possible)
                      merging -> failed (repository could not be located)
            active -> cancelled
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from companion.config import OrchestratorConfig, TmuxConfig
from companion.core import git_worktrees, tmux_bridge
from companion.core.event_bus import EventBus
from companion.core.events import (
    CompanionEvents,
    EventContext,
    EventType,
    GroupReadyContext,
    WorkerErrorContext,
    WorkerWaitingContext,
    WorkGroupUpdateContext,
)
from companion.core.input_injector import InputInjector
from companion.core.models import (
    MergeResult,
    OperationResult,
    SessionStatusEvent,
    WorkerSession,
    WorkerStatus,
    WorkGroup,
    WorkGroupStatus,
    utc_now,
)
from companion.core.session_ids import encode_project_path
from companion.core.work_group_store import WorkGroupStore
from companion.core.worker_inference import (
    build_worker_prompt,
    extract_question,
    is_cli_ready,
    is_completion_message,
)

logger = logging.getLogger(__name__)

_TASK_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class WorkGroupError(Exception):
    """A work group request was refused before anything was spawned."""


@dataclass
class SpawnWorkerRequest:
    task_slug: str
    task_description: str
    plan_section: str = ""
    files: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> SpawnWorkerRequest:
        files = data.get("files") or []
        if not isinstance(files, list):
            raise ValueError("files must be a list")
        return cls(
            task_slug=str(data["taskSlug"]),
            task_description=str(data.get("taskDescription") or ""),
            plan_section=str(data.get("planSection") or ""),
            files=[str(f) for f in files],
        )


@dataclass
class SpawnWorkGroupRequest:
    name: str
    foreman_session_id: str
    parent_dir: str
    workers: list[SpawnWorkerRequest]
    foreman_tmux_session: Optional[str] = None
    plan_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> SpawnWorkGroupRequest:
        workers = data.get("workers")
        if not isinstance(workers, list):
            raise ValueError("workers must be a list")
        tmux_session = data.get("foremanTmuxSession")
        plan_file = data.get("planFile")
        return cls(
            name=str(data["name"]),
            foreman_session_id=str(data.get("foremanSessionId") or ""),
            parent_dir=str(data["parentDir"]),
            workers=[SpawnWorkerRequest.from_dict(w) for w in workers],
            foreman_tmux_session=tmux_session if isinstance(tmux_session, str) else None,
            plan_file=plan_file if isinstance(plan_file, str) else None,
        )


class WorkGroupManager:  # pylint: disable=too-many-instance-attributes
    """Owns all work groups: spawning, progress, liveness, merge and cleanup.

    Every mutation is persisted through the store and published as a
    `work_group_update` event before the operation returns.
    """

    def __init__(
        self,
        injector: InputInjector,
        event_bus: EventBus,
        settings: Optional[OrchestratorConfig] = None,
        store: Optional[WorkGroupStore] = None,
        tmux_settings: Optional[TmuxConfig] = None,
    ) -> None:
        self._injector = injector
        self._bus = event_bus
        self._settings = settings or OrchestratorConfig()
        self._tmux = tmux_settings or TmuxConfig()
        self._store = store or (
            WorkGroupStore(self._settings.state_path) if self._settings.state_path else WorkGroupStore()
        )
        self._groups: dict[str, WorkGroup] = self._restore(self._store.load())
        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._unsubscribe = self._bus.subscribe(CompanionEvents.SESSION_STATUS, self._on_session_status)

    # ==================== Life cycle ====================

    def start(self) -> None:
        """Start the liveness monitor."""
        if self._monitor_task and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="work-group-monitor")
        logger.info("Work group monitor started (interval %.1fs)", self._settings.monitor_interval)

    async def stop(self) -> None:
        """Stop the monitor, detach from the bus and flush state."""
        self._unsubscribe()
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        self._save()

    @staticmethod
    def _restore(groups: dict[str, WorkGroup]) -> dict[str, WorkGroup]:
        """Re-derive transient states a restart interrupted."""
        for group in groups.values():
            if group.status == WorkGroupStatus.MERGING:
                logger.warning("Group %s was merging at shutdown, reverting to active", group.name)
                group.status = WorkGroupStatus.ACTIVE
            for worker in group.workers:
                if worker.status == WorkerStatus.SPAWNING:
                    worker.status = WorkerStatus.ERROR
                    worker.error = "Interrupted during spawn"
        return groups

    # ==================== Queries ====================

    def get_work_groups(self) -> list[WorkGroup]:
        return list(self._groups.values())

    def get_work_group(self, group_id: str) -> Optional[WorkGroup]:
        return self._groups.get(group_id)

    def get_work_group_for_session(self, session_id: str) -> Optional[WorkGroup]:
        """Group whose foreman or one of whose workers is `session_id`."""
        if not session_id:
            return None
        for group in self._groups.values():
            if group.foreman_session_id == session_id:
                return group
            if any(worker.session_id == session_id for worker in group.workers):
                return group
        return None

    # ==================== Spawn ====================

    async def create_work_group(self, request: SpawnWorkGroupRequest) -> WorkGroup:
        """Create a group and spawn its workers one after another.

        Raises:
            WorkGroupError: git integration is disabled, the parent directory
                is not a git repository, or the worker list is unusable.
        """
        if not self._settings.git_enabled:
            raise WorkGroupError("Git integration is disabled")
        if not request.workers:
            raise WorkGroupError("A work group needs at least one worker")
        slugs = [worker.task_slug for worker in request.workers]
        for slug in slugs:
            if not _TASK_SLUG_RE.match(slug):
                raise WorkGroupError(f"Invalid task slug: {slug!r}")
        if len(set(slugs)) != len(slugs):
            raise WorkGroupError("Task slugs must be unique within a group")

        repo_dir = await git_worktrees.repo_root_async(request.parent_dir)
        if repo_dir is None:
            raise WorkGroupError(f"Not a git repository: {request.parent_dir}")

        group = WorkGroup(
            id=str(uuid.uuid4()),
            name=request.name,
            foreman_session_id=request.foreman_session_id,
            foreman_tmux_session=request.foreman_tmux_session,
            repo_dir=str(repo_dir),
            plan_file=request.plan_file,
            workers=[self._new_worker(worker) for worker in request.workers],
        )
        self._groups[group.id] = group
        await self._publish(group)

        for worker in group.workers:
            await self._spawn_worker(repo_dir, group, worker)
            await self._publish(group)

        spawned = sum(1 for w in group.workers if w.status != WorkerStatus.ERROR)
        logger.info("Created group %r with %d/%d workers running", group.name, spawned, len(group.workers))
        return group

    def _new_worker(self, worker: SpawnWorkerRequest) -> WorkerSession:
        return WorkerSession(
            id=str(uuid.uuid4()),
            task_slug=worker.task_slug,
            task_description=worker.task_description,
            branch=f"{self._settings.branch_prefix}{worker.task_slug}",
            plan_section=worker.plan_section,
            files=list(worker.files),
        )

    async def _spawn_worker(self, repo_dir: Path, group: WorkGroup, worker: WorkerSession) -> None:
        """Bring one worker from spawning to working, or to error with nothing left behind.

        A group cancelled while the spawn is in flight gets no live worker: the
        sequence is skipped, or its result torn down once it returns.
        """
        if group.status != WorkGroupStatus.ACTIVE:
            worker.status = WorkerStatus.ERROR
            worker.error = worker.error or "Cancelled"
            return

        try:
            error = await self._try_spawn(repo_dir, worker)
        except Exception as e:  # noqa: BLE001 - a spawn failure must not leave partial resources
            logger.error("Unexpected error spawning worker %s: %s", worker.task_slug, e, exc_info=True)
            error = str(e) or type(e).__name__

        if group.status != WorkGroupStatus.ACTIVE:
            await self._teardown_worker(repo_dir, worker, delete_branch=True)
            worker.status = WorkerStatus.ERROR
            worker.error = "Cancelled"
            logger.info("Group %r was cancelled while spawning %s", group.name, worker.task_slug)
            return

        if error is None:
            worker.status = WorkerStatus.WORKING
            logger.info("Spawned worker %s in %s", worker.task_slug, worker.tmux_session_name)
            return

        await self._teardown_worker(repo_dir, worker, delete_branch=True)
        worker.status = WorkerStatus.ERROR
        worker.error = error
        logger.warning("Worker %s failed to spawn: %s", worker.task_slug, error)

    async def _try_spawn(self, repo_dir: Path, worker: WorkerSession) -> Optional[str]:
        """Run the spawn sequence. Returns an error message, or None on success."""
        worktree = await git_worktrees.create_worktree_async(repo_dir, worker.branch)
        if not worktree.success or not worktree.worktree_path:
            return worktree.error or "Failed to create worktree"
        worker.worktree_path = worktree.worktree_path
        worker.branch = worktree.branch or worker.branch

        session_name = tmux_bridge.generate_session_name(worktree.worktree_path, self._tmux.session_prefix)
        session = await tmux_bridge.create_session(
            session_name,
            worktree.worktree_path,
            True,
            agent_command=self._tmux.agent_command,
            env_var=self._tmux.managed_env_var,
            settle_delay=self._tmux.settle_delay,
        )
        if session.session_name:
            worker.tmux_session_name = session.session_name
        if not session.success:
            return session.error or "Failed to create tmux session"

        worker.session_id = encode_project_path(worktree.worktree_path)

        await self._wait_for_cli_ready(worker.tmux_session_name)

        prompt = build_worker_prompt(worker.task_slug, worker.task_description, worker.plan_section, worker.files)
        if not await self._injector.send_input(prompt, target=worker.tmux_session_name):
            return "Failed to inject worker prompt"
        return None

    async def _wait_for_cli_ready(self, session_name: str) -> bool:
        """Poll the pane until the agent looks ready. Gives up (and proceeds) after the timeout."""
        marker = Path(self._tmux.agent_command.split()[0]).name if self._tmux.agent_command.strip() else ""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.cli_ready_timeout
        while loop.time() < deadline:
            await asyncio.sleep(self._settings.cli_ready_poll_interval)
            output = await tmux_bridge.capture_pane(session_name, lines=20)
            if is_cli_ready(output, marker):
                return True
        logger.info(
            "Agent in %s not ready after %.0fs, proceeding anyway", session_name, self._settings.cli_ready_timeout
        )
        return False

    async def _teardown_worker(self, repo_dir: Optional[Path], worker: WorkerSession, delete_branch: bool) -> None:
        """Kill the session, remove the worktree and optionally the branch. Best effort."""
        if worker.tmux_session_name and await tmux_bridge.session_exists(worker.tmux_session_name):
            result = await tmux_bridge.kill_session(worker.tmux_session_name)
            if not result.success:
                logger.warning("Could not kill %s: %s", worker.tmux_session_name, result.error)
        if repo_dir is None:
            return
        if worker.worktree_path:
            result = await git_worktrees.remove_worktree_async(repo_dir, worker.worktree_path)
            if not result.success:
                logger.warning("Could not remove worktree %s: %s", worker.worktree_path, result.error)
        if delete_branch and worker.branch:
            await git_worktrees.delete_branch_async(repo_dir, worker.branch)

    # ==================== Progress inference ====================

    async def _on_session_status(self, _event: EventType, context: EventContext) -> None:
        if isinstance(context, SessionStatusEvent):
            await self.handle_status_change(context)

    async def handle_status_change(self, status: SessionStatusEvent) -> None:
        """Apply one watcher status event to the worker it belongs to."""
        if not status.session_id:
            return

        for group in list(self._groups.values()):
            if group.status != WorkGroupStatus.ACTIVE:
                continue
            for worker in group.workers:
                if status.session_id not in (worker.session_id, worker.tmux_session_name):
                    continue
                # Spawning workers are still being driven by the spawn sequence
                if worker.status.is_terminal or worker.status == WorkerStatus.SPAWNING:
                    continue
                await self._apply_status(group, worker, status)
                return

    async def _apply_status(self, group: WorkGroup, worker: WorkerSession, status: SessionStatusEvent) -> None:
        changed = False
        if status.current_activity and status.current_activity != worker.last_activity:
            worker.last_activity = status.current_activity
            changed = True

        if status.is_waiting_for_input and status.last_message:
            if is_completion_message(status.last_message):
                worker.status = WorkerStatus.COMPLETED
                worker.completed_at = utc_now()
                worker.last_question = None
                worker.commits = await self._detect_commits(worker)
                logger.info("Worker %s completed with %d commits", worker.task_slug, len(worker.commits))
                await self._publish(group)
                await self._check_group_completion(group)
                return

            worker.status = WorkerStatus.WAITING
            worker.last_question = extract_question(status.last_message)
            await self._publish(group)
            await self._bus.emit(
                CompanionEvents.WORKER_WAITING,
                WorkerWaitingContext(
                    group_id=group.id,
                    group_name=group.name,
                    worker_id=worker.id,
                    task_slug=worker.task_slug,
                    session_id=worker.session_id,
                    question=worker.last_question,
                ),
            )
            return

        if not status.is_waiting_for_input and worker.status == WorkerStatus.WAITING:
            worker.status = WorkerStatus.WORKING
            worker.last_question = None
            changed = True

        if changed:
            await self._publish(group)

    async def _detect_commits(self, worker: WorkerSession) -> list[str]:
        if not worker.worktree_path:
            return []
        base = await git_worktrees.resolve_base_branch_async(worker.worktree_path, self._settings.base_branches)
        if base is None:
            logger.warning("No base branch found for %s, commits unknown", worker.task_slug)
            return []
        return await git_worktrees.branch_commits_async(worker.worktree_path, base)

    async def _check_group_completion(self, group: WorkGroup) -> bool:
        if not group.workers or not group.all_workers_terminal:
            return False
        completed = sum(1 for w in group.workers if w.status == WorkerStatus.COMPLETED)
        logger.info("All workers in group %r have finished (%d completed)", group.name, completed)
        await self._bus.emit(
            CompanionEvents.GROUP_READY_TO_MERGE,
            GroupReadyContext(
                group_id=group.id,
                group_name=group.name,
                foreman_session_id=group.foreman_session_id,
                completed=completed,
                failed=len(group.workers) - completed,
            ),
        )
        return True

    # ==================== Liveness ====================

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.monitor_interval)
            try:
                await self.check_liveness()
            except Exception as e:  # noqa: BLE001 - the monitor must survive a bad tick
                logger.error("Liveness check failed: %s", e, exc_info=True)

    async def check_liveness(self) -> int:
        """Mark workers whose tmux session vanished as errored. Returns how many were marked."""
        marked = 0
        for group in list(self._groups.values()):
            if group.status != WorkGroupStatus.ACTIVE:
                continue
            changed = False
            for worker in group.workers:
                if worker.status.is_terminal or worker.status == WorkerStatus.SPAWNING:
                    continue
                if not worker.tmux_session_name or await tmux_bridge.session_exists(worker.tmux_session_name):
                    continue
                worker.status = WorkerStatus.ERROR
                worker.error = "Tmux session disappeared"
                changed = True
                marked += 1
                logger.warning("Worker %s lost its session %s", worker.task_slug, worker.tmux_session_name)
                await self._bus.emit(
                    CompanionEvents.WORKER_ERROR,
                    WorkerErrorContext(
                        group_id=group.id,
                        group_name=group.name,
                        worker_id=worker.id,
                        task_slug=worker.task_slug,
                        session_id=worker.session_id,
                        error=worker.error,
                    ),
                )
            if changed:
                await self._publish(group)
                await self._check_group_completion(group)
        return marked

    # ==================== Merge / cancel / retry / input / dismiss ====================

    def _resolve_repo(self, group: WorkGroup, exclude_worker_id: Optional[str] = None) -> Optional[Path]:
        """Main repository of a group, read from a worker's worktree, else the stored path."""
        for worker in group.workers:
            if worker.id == exclude_worker_id or not worker.worktree_path:
                continue
            repo = git_worktrees.resolve_main_repo(worker.worktree_path)
            if repo is not None:
                return repo
        if group.repo_dir and Path(group.repo_dir).is_dir():
            return Path(group.repo_dir)
        return None

    async def merge_work_group(self, group_id: str) -> MergeResult:
        """Merge every completed worker's branch into the base branch.

        Success completes the group and cleans up the merged workers. A failed
        merge puts the group back to active with the conflicting files listed,
        so it can be fixed and merged again.
        """
        group = self._groups.get(group_id)
        if group is None:
            return MergeResult(success=False, error="Work group not found")
        if group.status != WorkGroupStatus.ACTIVE:
            return MergeResult(success=False, error=f"Work group is {group.status.value}")
        if not group.all_workers_terminal:
            return MergeResult(success=False, error="Workers are still running")
        completed = [w for w in group.workers if w.status == WorkerStatus.COMPLETED]
        if not completed:
            return MergeResult(success=False, error="No completed workers to merge")

        group.status = WorkGroupStatus.MERGING
        await self._publish(group)

        repo_dir = self._resolve_repo(group)
        if repo_dir is None:
            group.status = WorkGroupStatus.FAILED
            group.error = "Could not determine main repo directory"
            group.completed_at = utc_now()
            await self._publish(group)
            return MergeResult(success=False, error=group.error)

        try:
            result = await git_worktrees.merge_branches_async(
                repo_dir, [w.branch for w in completed], self._settings.base_branches
            )
        except Exception as e:  # noqa: BLE001 - group must not stay in merging
            logger.error("Merge of group %r raised: %s", group.name, e, exc_info=True)
            result = MergeResult(success=False, error=str(e) or type(e).__name__)

        if not result.success:
            group.status = WorkGroupStatus.ACTIVE
            group.error = result.error
            await self._publish(group)
            return result

        for worker in completed:
            await self._teardown_worker(repo_dir, worker, delete_branch=True)
        group.status = WorkGroupStatus.COMPLETED
        group.merge_commit = result.merge_commit
        group.completed_at = utc_now()
        group.error = None
        await self._publish(group)
        logger.info("Merged group %r -> %s", group.name, (result.merge_commit or "")[:8])
        return result

    async def cancel_work_group(self, group_id: str) -> OperationResult:
        """Tear down every worker and mark the group cancelled."""
        group = self._groups.get(group_id)
        if group is None:
            return OperationResult(success=False, error="Work group not found")
        if group.status == WorkGroupStatus.MERGING:
            return OperationResult(success=False, error="Cannot cancel while merging")
        if group.status != WorkGroupStatus.ACTIVE:
            return OperationResult(success=False, error=f"Work group is already {group.status.value}")

        repo_dir = self._resolve_repo(group)
        for worker in group.workers:
            await self._teardown_worker(repo_dir, worker, delete_branch=True)
            if not worker.status.is_terminal:
                worker.status = WorkerStatus.ERROR
                worker.error = "Cancelled"

        group.status = WorkGroupStatus.CANCELLED
        group.completed_at = utc_now()
        await self._publish(group)
        logger.info("Cancelled group %r", group.name)
        return OperationResult(success=True)

    async def retry_worker(self, group_id: str, worker_id: str) -> OperationResult:
        """Replace an errored worker with a fresh one running the same task."""
        group = self._groups.get(group_id)
        if group is None:
            return OperationResult(success=False, error="Work group not found")
        if group.status != WorkGroupStatus.ACTIVE:
            return OperationResult(success=False, error=f"Work group is {group.status.value}")
        old = group.find_worker(worker_id)
        if old is None:
            return OperationResult(success=False, error="Worker not found")
        if old.status != WorkerStatus.ERROR:
            return OperationResult(success=False, error="Worker is not in error state")

        repo_dir = self._resolve_repo(group, exclude_worker_id=worker_id)
        if repo_dir is None:
            return OperationResult(success=False, error="Cannot determine parent repo directory")

        # Branch is kept so commits the failed worker made are picked up again
        await self._teardown_worker(repo_dir, old, delete_branch=False)

        worker = self._new_worker(
            SpawnWorkerRequest(
                task_slug=old.task_slug,
                task_description=old.task_description,
                plan_section=old.plan_section,
                files=list(old.files),
            )
        )
        group.workers[group.workers.index(old)] = worker
        await self._publish(group)

        await self._spawn_worker(repo_dir, group, worker)
        await self._publish(group)
        if worker.status == WorkerStatus.ERROR:
            return OperationResult(success=False, error=worker.error)
        return OperationResult(success=True)

    async def send_worker_input(self, group_id: str, worker_id: str, text: str) -> OperationResult:
        """Type a reply into a worker; a delivered reply puts it back to working."""
        group = self._groups.get(group_id)
        if group is None:
            return OperationResult(success=False, error="Work group not found")
        worker = group.find_worker(worker_id)
        if worker is None:
            return OperationResult(success=False, error="Worker not found")
        if not worker.tmux_session_name:
            return OperationResult(success=False, error="Worker has no tmux session")
        if worker.status.is_terminal:
            return OperationResult(success=False, error=f"Worker is {worker.status.value}")

        if not await self._injector.send_input(text, target=worker.tmux_session_name):
            return OperationResult(success=False, error="Failed to send input")

        worker.status = WorkerStatus.WORKING
        worker.last_question = None
        await self._publish(group)
        return OperationResult(success=True)

    async def dismiss_work_group(self, group_id: str) -> OperationResult:
        """Forget a finished group."""
        group = self._groups.get(group_id)
        if group is None:
            return OperationResult(success=False, error="Work group not found")
        if not group.status.is_dismissable:
            return OperationResult(success=False, error=f"Cannot dismiss a {group.status.value} group")

        del self._groups[group_id]
        self._save()
        await self._bus.emit(CompanionEvents.WORK_GROUP_UPDATE, WorkGroupUpdateContext(group=group))
        return OperationResult(success=True)

    # ==================== Persistence ====================

    def _save(self) -> None:
        self._store.save(self._groups.values())

    async def _publish(self, group: WorkGroup) -> None:
        self._save()
        await self._bus.emit(CompanionEvents.WORK_GROUP_UPDATE, WorkGroupUpdateContext(group=group))
