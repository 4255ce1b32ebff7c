import logging
from pathlib import Path
from typing import Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from companion.config.schema import CompanionConfig
from companion.paths import CONFIG_PATH
from companion.utils import expand_env_vars

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if hasattr(model, "model_extra") and model.model_extra:
        logger.warning("Unknown keys in %s at %s: %s", path, config_path, list(model.model_extra.keys()))

    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)


def load_config(path: Path, model_class: Type[T]) -> T:
    """Load and validate configuration from a YAML file.

    Args:
        path: Path to the YAML file.
        model_class: The Pydantic model class to use for validation.

    Returns:
        The validated configuration model. Defaults when the file is missing
        or unreadable.
    """
    if not path.exists():
        return model_class()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read config file %s: %s", path, e)
        return model_class()

    if not isinstance(raw, dict):
        logger.warning("Config file %s is not a mapping, using defaults", path)
        return model_class()

    expanded = expand_env_vars(raw)
    model = model_class.model_validate(expanded)
    _warn_unknown_keys(model, "root", path)
    return model


def load_companion_config(path: Optional[Path] = None) -> CompanionConfig:
    """Load daemon configuration, falling back to defaults on invalid files."""
    if path is None:
        path = CONFIG_PATH
    try:
        return load_config(path, CompanionConfig)
    except ValidationError as e:
        logger.error("Invalid config at %s, using defaults: %s", path, e)
        return CompanionConfig()
