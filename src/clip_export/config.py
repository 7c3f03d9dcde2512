import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import ClipExportConfig, LoggingConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


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
) -> ClipExportConfig:
    """
    Resolve config: Default < Local < --config file < CLI.

    Raises:
        FileNotFoundError: if an explicit config_path does not exist
        pydantic.ValidationError: if the merged config is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        config_data = merge_dicts(config_data, load_yaml(path))

    config = ClipExportConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def setup_logging(logging_config: Optional[LoggingConfig] = None) -> None:
    """Configure the root logger once per process."""
    logging_config = logging_config or LoggingConfig()
    logging.basicConfig(
        level=getattr(logging, logging_config.level),
        format=logging_config.format,
        force=True,
    )
