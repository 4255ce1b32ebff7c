"""Plain-text heuristics for reading worker progress.

Everything the orchestrator infers from agent output lives here, so the
matching rules can change without touching the worker state machine.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from companion import constants
from companion.core.models import WorkerQuestion

COMPLETION_SENTINEL = "TASK COMPLETE:"

_OPTION_RE = re.compile(r"^\s*(?:\d+[.)]\s*|[-*]\s+)(.+)")
_READY_PROMPT_MARKERS = (">", "$", "What")


def is_completion_message(content: Optional[str]) -> bool:
    if not content:
        return False
    return content.lstrip().startswith(COMPLETION_SENTINEL)


def extract_question(content: str) -> WorkerQuestion:
    """Best-effort question from a waiting worker's last message.

    The first non-empty line is the question; later numbered (`1.`, `2)`) or
    bulleted (`-`, `*`) lines are its options.
    """
    lines = [line for line in content.splitlines() if line.strip()]
    text = lines[0].strip() if lines else content[: constants.QUESTION_FALLBACK_LENGTH]

    options: list[str] = []
    for line in lines[1:]:
        match = _OPTION_RE.match(line)
        if match:
            options.append(match.group(1).strip())

    return WorkerQuestion(text=text, options=options or None)


def is_cli_ready(pane_output: str, agent_marker: str = constants.DEFAULT_AGENT_COMMAND) -> bool:
    """True once the agent's banner and an input prompt are both on screen."""
    if agent_marker.lower() not in pane_output.lower():
        return False
    return any(marker in pane_output for marker in _READY_PROMPT_MARKERS)


def build_worker_prompt(task_slug: str, task_description: str, plan_section: str, files: Sequence[str]) -> str:
    """Initial instructions typed into a freshly spawned worker."""
    file_list = "\n".join(f"- `{path}`" for path in files) if files else "(see plan section below)"
    return "\n".join(
        [
            "You are implementing one item from a parallel work plan. Other items are being",
            "worked on simultaneously in separate sessions. Stay focused on your task only.",
            "",
            f"## Task: {task_slug}",
            "",
            task_description,
            "",
            plan_section,
            "",
            "## Scoped Files",
            file_list,
            "",
            "## Rules",
            "- Only modify files relevant to this task",
            "- Write tests first, then implement, then refactor",
            "- Run the project's type check and tests when done",
            "- Commit with a descriptive message when done (do NOT push)",
            "- If you need clarification, ask: someone is monitoring",
            f'- When finished, your final message should start with "{COMPLETION_SENTINEL}"',
            "  followed by a summary of what was done and commit SHAs",
        ]
    )
