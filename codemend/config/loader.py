import collections.abc
import copy
from pathlib import Path
from typing import Any, Dict

import structlog
import yaml

from codemend.config.defaults import DEFAULT_CONFIG
from codemend.config.settings import CodemendConfig
from codemend.core.errors import ConfigError

logger = structlog.get_logger(__name__)

PROJECT_CONFIG_NAME = ".codemend.yaml"


def deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Recursively merges two dictionaries.
    'override' values take precedence over 'base' values.
    Lists are overridden, not merged.
    """
    result = base.copy()
    for key, value in override.items():
        if (
            isinstance(value, collections.abc.Mapping)
            and key in result
            and isinstance(result[key], collections.abc.Mapping)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"top level of {path} must be a mapping")
    return data


def load_config(project_path: str = ".") -> Dict[str, Any]:
    """
    Loads and merges configurations from default, global, and project-specific files.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    global_config_path = Path.home() / ".codemend" / "config.yaml"
    if global_config_path.is_file():
        try:
            config = deep_merge(config, _read_yaml(global_config_path))
        except yaml.YAMLError as e:
            logger.warning("global_config_unparsable", path=str(global_config_path), error=str(e))

    project_config_path = Path(project_path) / PROJECT_CONFIG_NAME
    if project_config_path.is_file():
        try:
            config = deep_merge(config, _read_yaml(project_config_path))
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing project config file at {project_config_path}: {e}") from e

    return config


def load_settings(project_path: str = ".") -> CodemendConfig:
    return CodemendConfig.from_dict(load_config(project_path))
