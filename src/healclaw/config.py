"""Configuration loading and management for HealClaw."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path

import yaml
from loguru import logger

from healclaw.models import ErrorReport, HealClawConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".healclaw"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "healclaw.yaml"
DEFAULT_DB_FILE = DEFAULT_CONFIG_DIR / "healclaw.db"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir() -> Path:
    """Ensure the config directory exists."""
    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DEFAULT_LOGS_DIR.mkdir(parents=True, exist_ok=True)
    return DEFAULT_CONFIG_DIR


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """

    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)
    return os.path.expandvars(value)


def _expand_tree(data):
    """Recursively expand env vars in every string of a loaded document."""
    if isinstance(data, dict):
        return {k: _expand_tree(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_tree(v) for v in data]
    if isinstance(data, str):
        return expand_env_vars(data)
    return data


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return data


def load_config(config_path: Path | None = None) -> HealClawConfig:
    """Load the main HealClaw configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return HealClawConfig()

    try:
        data = load_yaml_file(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    try:
        config = HealClawConfig.model_validate(_expand_tree(data))
        logger.debug(f"Loaded config from {path}")
        return config
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def save_config(config: HealClawConfig, config_path: Path | None = None) -> Path:
    """Write a configuration file, omitting defaults."""
    path = config_path or DEFAULT_CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(
            config.model_dump(mode="json", exclude_defaults=True),
            f,
            default_flow_style=False,
            sort_keys=False,
        )

    logger.info(f"Saved config to {path}")
    return path


def create_default_config() -> Path:
    """Create the default configuration file if it doesn't exist."""
    ensure_config_dir()

    if not DEFAULT_CONFIG_FILE.exists():
        save_config(HealClawConfig(), DEFAULT_CONFIG_FILE)
        logger.info(f"Created default config at {DEFAULT_CONFIG_FILE}")

    return DEFAULT_CONFIG_FILE


def load_reports(path: Path) -> list[ErrorReport]:
    """Load error reports from a JSON or YAML file.

    The file holds either a list of reports or a mapping with a ``reports``
    list. Entries that fail validation are logged and skipped; missing
    signatures are computed.
    """
    if not path.exists():
        raise ConfigError(f"Reports file not found: {path}")

    text = path.read_text()
    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Invalid reports file {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("reports", [])
    if not isinstance(data, list):
        raise ConfigError(f"Invalid reports file {path}: expected a list of reports")

    reports: list[ErrorReport] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            logger.warning(f"Skipping report #{index} in {path}: not a mapping")
            continue
        try:
            reports.append(ErrorReport.create(**entry))
        except Exception as e:
            logger.warning(f"Skipping invalid report #{index} in {path}: {e}")

    logger.debug(f"Loaded {len(reports)} reports from {path}")
    return reports
