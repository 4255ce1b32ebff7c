"""JSON snapshot persistence for work groups (~/.companion/work-groups.json)."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Iterable

from companion.core.models import WorkGroup
from companion.paths import WORK_GROUPS_STATE_PATH

logger = logging.getLogger(__name__)


class WorkGroupStore:
    """Whole-state snapshot store.

    The snapshot is a JSON list of groups, rewritten in full after every
    mutation. Reads and writes never raise: a broken file loads as empty and is
    replaced by the next save; a failed save is logged and skipped.
    """

    def __init__(self, path: Path | str = WORK_GROUPS_STATE_PATH) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, WorkGroup]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise TypeError(f"expected a list of groups, got {type(data).__name__}")
            groups = [WorkGroup.from_dict(item) for item in data]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as e:
            logger.warning("Discarding unreadable work group state %s: %s", self.path, e)
            return {}

        logger.info("Loaded %d work groups from %s", len(groups), self.path)
        return {group.id: group for group in groups}

    def save(self, groups: Iterable[WorkGroup]) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = [group.to_dict() for group in groups]
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Failed to save work group state to %s: %s", self.path, e)
            return
        logger.debug("Saved %d work groups to %s", len(payload), self.path)
