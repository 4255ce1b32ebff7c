"""Session id derivation shared with the transcript watcher.

The watcher keys conversation sessions by the agent's project directory,
encoded the way the agent CLI names its project folders. Anything that needs
to predict a watcher session id for a path must go through this function.
"""

from __future__ import annotations

import os
import re


def encode_project_path(path: str) -> str:
    """Encode an absolute project path: `/` and `_` become `-`."""
    return re.sub(r"[/_]", "-", os.path.abspath(path))
