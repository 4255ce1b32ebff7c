"""Global configuration management.

Config is loaded at module import time and available globally via:
    from companion.config import config

Components take their config section as a constructor argument, so tests can
pass their own models instead of patching this module.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

from companion.config.loader import load_companion_config
from companion.config.schema import (
    CompanionConfig,
    EscalationConfig,
    InjectorConfig,
    OrchestratorConfig,
    ServerConfig,
    TmuxConfig,
)
from companion.paths import CONFIG_PATH, ENV_PATH

_env_path = os.getenv("COMPANION_ENV_PATH")
load_dotenv(Path(_env_path).expanduser() if _env_path else ENV_PATH)

_config_path = os.getenv("COMPANION_CONFIG_PATH")
config: CompanionConfig = load_companion_config(Path(_config_path).expanduser() if _config_path else CONFIG_PATH)

__all__ = [
    "CompanionConfig",
    "EscalationConfig",
    "InjectorConfig",
    "OrchestratorConfig",
    "ServerConfig",
    "TmuxConfig",
    "config",
    "load_companion_config",
]
