import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from .models import QueueConfig
from .queue.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable overriding storage.db_path
DATABASE_PATH_ENV = "DATABASE_PATH"


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> QueueConfig:
    """
    Resolve config: Defaults < default.yaml < local.yaml < --config file < env < CLI
    Returns validated Pydantic QueueConfig model.

    Raises:
        ConfigError: If a file is unreadable or the merged config is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        config_data = merge_dicts(config_data, load_yaml(config_path))

    if os.getenv(DATABASE_PATH_ENV):
        config_data = merge_dicts(
            config_data, {"storage": {"db_path": os.environ[DATABASE_PATH_ENV]}}
        )

    try:
        config = QueueConfig.from_dict(config_data)
        return config.merge_cli_overrides(cli_args)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def configure_logging(config: QueueConfig) -> None:
    """Install the root handler once, from the ``logging`` config section."""
    logging.basicConfig(level=config.logging.level, format=config.logging.format)
