from __future__ import annotations

import os
from pathlib import Path

COMPANION_HOME = Path(os.getenv("COMPANION_HOME", "~/.companion")).expanduser()
CONFIG_PATH = COMPANION_HOME / "config.yml"
ENV_PATH = COMPANION_HOME / ".env"
WORK_GROUPS_STATE_PATH = COMPANION_HOME / "work-groups.json"
