import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path(__file__).with_name("default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_config_value(config: Union[PipelineConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PipelineConfig model or dict
        path: Dot-separated path like "worker.max_concurrent_jobs"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, PipelineConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


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
    cli_args: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None
) -> PipelineConfig:
    """
    Resolve config: Default < Local < --config file < CLI
    Returns validated Pydantic PipelineConfig model.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    # 1. Packaged defaults
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Local overrides (working directory)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Explicit config file
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        config_data = merge_dicts(config_data, load_yaml(config_path))

    # 4. Validate, then apply CLI overrides
    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(level: str = "INFO") -> None:
    """Install the root log handler used by the CLI and the API."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
