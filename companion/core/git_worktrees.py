"""Git worktree and merge operations.

Thin wrapper over GitPython. Every git command carries `kill_after_timeout`.
The blocking functions are the implementation; the `*_async` variants run
them off the event loop. No function raises: failures are reported through
result objects, None, or empty lists.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import Counter
from pathlib import Path
from typing import Optional, Sequence

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from companion import constants
from companion.core.models import MergeResult, OperationResult, Worktree, WorktreeResult
from companion.utils import to_base36

logger = logging.getLogger(__name__)

GIT_TIMEOUT = constants.GIT_OPERATION_TIMEOUT_S
MERGE_TIMEOUT = constants.GIT_MERGE_TIMEOUT_S

_GITDIR_RE = re.compile(r"gitdir:\s*(.+)")


def _open_repo(path: str | Path) -> Optional[Repo]:
    try:
        return Repo(path, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return None


def _git_error(exc: GitCommandError) -> str:
    stderr = exc.stderr.strip() if isinstance(exc.stderr, str) else ""
    return stderr or str(exc)


def is_git_repo(path: str | Path) -> bool:
    return _open_repo(path) is not None


def repo_root(path: str | Path) -> Optional[Path]:
    """Top-level directory of the checkout containing `path`."""
    repo = _open_repo(path)
    if repo is None or repo.working_tree_dir is None:
        return None
    return Path(repo.working_tree_dir)


def worktree_path_for(repo_dir: str | Path, branch: str) -> Path:
    """Sibling directory `<repo>-wt-<branch>` for a new worktree.

    Slashes in the branch name become dashes. If the directory is already
    taken, `-2`, `-3`, ... is appended until a free path is found.
    """
    root = Path(repo_dir).resolve()
    safe_branch = re.sub(r"[^A-Za-z0-9._-]", "-", branch)
    base_name = f"{root.name}-wt-{safe_branch}"
    candidate = root.parent / base_name
    suffix = 2
    while candidate.exists():
        candidate = root.parent / f"{base_name}-{suffix}"
        suffix += 1
    return candidate


def generate_branch_name() -> str:
    return f"{constants.DEFAULT_SESSION_PREFIX}-{to_base36(int(time.time() * 1000))}"


def resolve_main_repo(worktree_path: str | Path) -> Optional[Path]:
    """Find the main repository a worktree belongs to.

    A linked worktree has a `.git` file `gitdir: <repo>/.git/worktrees/<name>`;
    the main checkout has a `.git` directory and is its own main repo.
    """
    root = Path(worktree_path)
    git_path = root / ".git"
    try:
        if git_path.is_dir():
            return root.resolve()
        if not git_path.is_file():
            return None
        content = git_path.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.debug("Cannot read %s: %s", git_path, e)
        return None

    match = _GITDIR_RE.match(content)
    if not match:
        return None
    gitdir = Path(match.group(1).strip())
    if not gitdir.is_absolute():
        gitdir = root / gitdir
    # <repo>/.git/worktrees/<name> -> <repo>
    return gitdir.resolve().parents[2]


def create_worktree(repo_dir: str | Path, branch: Optional[str] = None, base: Optional[str] = None) -> WorktreeResult:
    """Create a linked worktree on `branch` next to the repository.

    A new branch is created from `base` (or HEAD); an existing branch is
    checked out as-is.
    """
    repo = _open_repo(repo_dir)
    if repo is None or repo.working_tree_dir is None:
        return WorktreeResult(success=False, error=f"Not a git repository: {repo_dir}")

    branch = branch or generate_branch_name()
    path = worktree_path_for(repo.working_tree_dir, branch)

    try:
        if branch in repo.heads:
            repo.git.worktree("add", str(path), branch, kill_after_timeout=GIT_TIMEOUT)
        else:
            args = ["add", "-b", branch, str(path)]
            if base:
                args.append(base)
            repo.git.worktree(*args, kill_after_timeout=GIT_TIMEOUT)
    except GitCommandError as e:
        error = _git_error(e)
        logger.error("Failed to create worktree %s for %s: %s", path, branch, error)
        return WorktreeResult(success=False, error=error)

    logger.info("Created worktree %s on branch %s", path, branch)
    return WorktreeResult(success=True, worktree_path=str(path), branch=branch)


def remove_worktree(repo_dir: str | Path, worktree_path: str | Path) -> OperationResult:
    """Remove a linked worktree (forced) and prune stale worktree metadata."""
    repo = _open_repo(repo_dir)
    if repo is None:
        return OperationResult(success=False, error=f"Not a git repository: {repo_dir}")

    try:
        if Path(worktree_path).exists():
            repo.git.worktree("remove", "--force", str(worktree_path), kill_after_timeout=GIT_TIMEOUT)
        repo.git.worktree("prune", kill_after_timeout=GIT_TIMEOUT)
    except GitCommandError as e:
        error = _git_error(e)
        logger.error("Failed to remove worktree %s: %s", worktree_path, error)
        return OperationResult(success=False, error=error)

    logger.info("Removed worktree %s", worktree_path)
    return OperationResult(success=True)


def list_worktrees(repo_dir: str | Path) -> list[Worktree]:
    """Parse `git worktree list --porcelain`. The first entry is the main checkout."""
    repo = _open_repo(repo_dir)
    if repo is None:
        return []
    try:
        output = repo.git.worktree("list", "--porcelain", kill_after_timeout=GIT_TIMEOUT)
    except GitCommandError as e:
        logger.warning("Failed to list worktrees in %s: %s", repo_dir, _git_error(e))
        return []

    worktrees: list[Worktree] = []
    for block in output.strip().split("\n\n"):
        path: Optional[str] = None
        branch: Optional[str] = None
        for line in block.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree ") :]
            elif line.startswith("branch "):
                branch = line[len("branch ") :].removeprefix("refs/heads/")
        if path:
            worktrees.append(Worktree(path=path, branch=branch, is_main=not worktrees))
    return worktrees


def delete_branch(repo_dir: str | Path, branch: str) -> bool:
    repo = _open_repo(repo_dir)
    if repo is None:
        return False
    try:
        repo.git.branch("-D", branch, kill_after_timeout=GIT_TIMEOUT)
    except GitCommandError as e:
        logger.debug("Branch %s not deleted: %s", branch, _git_error(e))
        return False
    return True


def resolve_base_branch(
    repo_dir: str | Path, candidates: Sequence[str] = constants.BASE_BRANCH_CANDIDATES
) -> Optional[str]:
    """First candidate branch that exists locally (main, then master)."""
    repo = _open_repo(repo_dir)
    if repo is None:
        return None
    for name in candidates:
        if name in repo.heads:
            return name
    return None


def branch_commits(worktree_path: str | Path, base: str) -> list[str]:
    """Commit SHAs on the worktree's HEAD that are not on `base`."""
    repo = _open_repo(worktree_path)
    if repo is None:
        return []
    try:
        output = repo.git.log("--format=%H", "HEAD", f"^{base}", kill_after_timeout=GIT_TIMEOUT)
    except GitCommandError as e:
        logger.debug("No commits resolved for %s against %s: %s", worktree_path, base, _git_error(e))
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def _unmerged_files(repo: Repo) -> list[str]:
    try:
        output = repo.git.diff("--name-only", "--diff-filter=U", kill_after_timeout=GIT_TIMEOUT)
    except GitCommandError:
        return []
    return [line for line in output.splitlines() if line]


def _overlapping_files(repo: Repo, base: str, branches: Sequence[str]) -> list[str]:
    """Files changed by two or more sides since their merge bases."""
    counts: Counter[str] = Counter()
    try:
        for branch in branches:
            merge_base = repo.git.merge_base(base, branch, kill_after_timeout=GIT_TIMEOUT).strip()
            branch_files = set(repo.git.diff("--name-only", merge_base, branch, kill_after_timeout=GIT_TIMEOUT).split())
            base_files = set(repo.git.diff("--name-only", merge_base, base, kill_after_timeout=GIT_TIMEOUT).split())
            counts.update(branch_files)
            for path in branch_files & base_files:
                counts[path] += 1
    except GitCommandError as e:
        logger.debug("Could not compute overlapping files: %s", _git_error(e))
        return []
    return sorted(path for path, count in counts.items() if count >= 2)


def _abort_merge(repo: Repo, pre_merge_head: str) -> None:
    try:
        repo.git.merge("--abort", kill_after_timeout=GIT_TIMEOUT)
    except GitCommandError as e:
        logger.debug("merge --abort failed (%s), resetting to %s", _git_error(e), pre_merge_head[:8])
    if repo.is_dirty(untracked_files=False) or repo.head.commit.hexsha != pre_merge_head:
        try:
            repo.git.reset("--hard", pre_merge_head, kill_after_timeout=GIT_TIMEOUT)
        except GitCommandError as e:
            logger.error("Failed to restore %s after merge failure: %s", pre_merge_head[:8], _git_error(e))


def merge_branches(
    repo_dir: str | Path,
    branches: Sequence[str],
    base_candidates: Sequence[str] = constants.BASE_BRANCH_CANDIDATES,
) -> MergeResult:
    """Merge all branches into the base branch in one (octopus) merge.

    On failure the merge is rolled back before returning, so the repository is
    left on the base branch at its pre-merge commit.
    """
    if not branches:
        return MergeResult(success=False, error="No branches to merge")

    repo = _open_repo(repo_dir)
    if repo is None:
        return MergeResult(success=False, error=f"Not a git repository: {repo_dir}")

    base = resolve_base_branch(repo_dir, base_candidates)
    if base is None:
        return MergeResult(success=False, error=f"No base branch ({', '.join(base_candidates)}) in {repo_dir}")

    try:
        repo.git.checkout(base, kill_after_timeout=GIT_TIMEOUT)
        pre_merge_head = repo.head.commit.hexsha
    except GitCommandError as e:
        return MergeResult(success=False, error=f"Cannot check out {base}: {_git_error(e)}")

    try:
        repo.git.merge(*branches, "--no-edit", kill_after_timeout=MERGE_TIMEOUT)
    except GitCommandError as e:
        conflicts = _unmerged_files(repo) or _overlapping_files(repo, base, branches)
        _abort_merge(repo, pre_merge_head)
        logger.warning("Merge of %s into %s failed (conflicts: %s)", ", ".join(branches), base, conflicts)
        error = f"Merge conflict in: {', '.join(conflicts)}" if conflicts else f"Merge failed: {_git_error(e)}"
        return MergeResult(success=False, error=error, conflicts=conflicts)

    merge_commit = repo.head.commit.hexsha
    logger.info("Merged %s into %s -> %s", ", ".join(branches), base, merge_commit[:8])
    return MergeResult(success=True, merge_commit=merge_commit)


async def create_worktree_async(
    repo_dir: str | Path, branch: Optional[str] = None, base: Optional[str] = None
) -> WorktreeResult:
    return await asyncio.to_thread(create_worktree, repo_dir, branch, base)


async def remove_worktree_async(repo_dir: str | Path, worktree_path: str | Path) -> OperationResult:
    return await asyncio.to_thread(remove_worktree, repo_dir, worktree_path)


async def list_worktrees_async(repo_dir: str | Path) -> list[Worktree]:
    return await asyncio.to_thread(list_worktrees, repo_dir)


async def is_git_repo_async(path: str | Path) -> bool:
    return await asyncio.to_thread(is_git_repo, path)


async def repo_root_async(path: str | Path) -> Optional[Path]:
    return await asyncio.to_thread(repo_root, path)


async def delete_branch_async(repo_dir: str | Path, branch: str) -> bool:
    return await asyncio.to_thread(delete_branch, repo_dir, branch)


async def resolve_base_branch_async(
    repo_dir: str | Path, candidates: Sequence[str] = constants.BASE_BRANCH_CANDIDATES
) -> Optional[str]:
    return await asyncio.to_thread(resolve_base_branch, repo_dir, candidates)


async def branch_commits_async(worktree_path: str | Path, base: str) -> list[str]:
    return await asyncio.to_thread(branch_commits, worktree_path, base)


async def merge_branches_async(
    repo_dir: str | Path,
    branches: Sequence[str],
    base_candidates: Sequence[str] = constants.BASE_BRANCH_CANDIDATES,
) -> MergeResult:
    return await asyncio.to_thread(merge_branches, repo_dir, branches, base_candidates)
