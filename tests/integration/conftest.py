"""Shared fixtures for integration tests."""

from pathlib import Path
from typing import Callable

import pytest
from git import Repo

CommitFile = Callable[[Path, str, str, str], str]


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commits in temp repositories need an identity regardless of the host's git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Companion Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@companion.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Companion Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@companion.invalid")


def _commit_file(repo_dir: Path, name: str, content: str, message: str) -> str:
    repo = Repo(repo_dir)
    (repo_dir / name).write_text(content, encoding="utf-8")
    repo.git.add(name)
    repo.git.commit("--no-gpg-sign", "-m", message)
    return repo.head.commit.hexsha


@pytest.fixture
def commit_file() -> CommitFile:
    """Write a file in a checkout, commit it, and return the new HEAD sha."""
    return _commit_file


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A repository with one commit on `main`."""
    path = tmp_path / "repo"
    path.mkdir()
    repo = Repo.init(path)
    _commit_file(path, "README.md", "# Project\n", "Initial commit")
    repo.git.branch("-M", "main")
    return path
