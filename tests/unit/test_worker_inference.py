"""Unit tests for worker output heuristics."""

from companion.core.worker_inference import (
    COMPLETION_SENTINEL,
    build_worker_prompt,
    extract_question,
    is_cli_ready,
    is_completion_message,
)


def test_completion_requires_sentinel_at_start():
    assert is_completion_message("TASK COMPLETE: added parser, commit abc123")
    assert is_completion_message("\n  TASK COMPLETE: done")
    assert not is_completion_message("I will say TASK COMPLETE: when done")
    assert not is_completion_message("")
    assert not is_completion_message(None)


def test_extract_question_with_numbered_and_bulleted_options():
    question = extract_question("Which database should I use?\n\n1. SQLite\n2) Postgres\n- Redis\n")
    assert question.text == "Which database should I use?"
    assert question.options == ["SQLite", "Postgres", "Redis"]


def test_extract_question_without_options():
    question = extract_question("\n\nShould I also update the docs?\nThe README mentions it.")
    assert question.text == "Should I also update the docs?"
    assert question.options is None


def test_question_serializes_options_as_labels():
    data = extract_question("Pick one\n1. a\n2. b").to_dict()
    assert data["options"] == [{"label": "a"}, {"label": "b"}]
    assert data["timestamp"]


def test_cli_ready_needs_banner_and_prompt():
    assert is_cli_ready("Welcome to Claude Code!\n\n> ")
    assert not is_cli_ready("Loading...")
    assert not is_cli_ready("> ")


def test_cli_ready_uses_custom_marker():
    assert is_cli_ready("codex v1\nWhat should we build?", agent_marker="codex")
    assert not is_cli_ready("claude\n> ", agent_marker="codex")


def test_worker_prompt_contains_task_scope_and_sentinel():
    prompt = build_worker_prompt("add-auth", "Add token auth", "### Auth\nDetails", ["api.py", "auth.py"])
    assert "## Task: add-auth" in prompt
    assert "Add token auth" in prompt
    assert "### Auth\nDetails" in prompt
    assert "- `api.py`\n- `auth.py`" in prompt
    assert COMPLETION_SENTINEL in prompt.splitlines()[-2]


def test_worker_prompt_without_files_points_at_plan():
    prompt = build_worker_prompt("x", "desc", "", [])
    assert "(see plan section below)" in prompt
