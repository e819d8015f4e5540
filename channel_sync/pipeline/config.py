"""Runtime settings: environment (with .env support) plus an optional YAML file."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from channel_sync.connectors.rotation import ApiKey, parse_key_pool
from channel_sync.connectors.youtube import CostPolicy
from channel_sync.errors import ConfigurationError

DEFAULT_DB_PATH = "data/channels.db"
DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_LOG_FILE = "api-usage.log"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


@dataclass
class Settings:
    keys: List[ApiKey]
    db_path: str = DEFAULT_DB_PATH
    log_file: str = DEFAULT_LOG_FILE
    max_concurrent: int = 1
    request_timeout: float = 15.0
    run_deadline: Optional[float] = None
    entity_delay: float = 0.0
    unreachable_after_failures: int = 3
    costs: CostPolicy = field(default_factory=CostPolicy)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment and the optional tuning file.

    Raises ConfigurationError when the key pool is missing or a value is invalid.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    keys = parse_key_pool(env.get("YT_API_KEYS"))
    config = _load_yaml(env.get("SYNC_CONFIG") or DEFAULT_CONFIG_PATH)

    try:
        costs = CostPolicy.from_config(config.get("quota_costs"))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid quota_costs: {e}") from e
    if min(costs.search, costs.details, costs.uploads) < 0:
        raise ConfigurationError("quota_costs must be non-negative")

    deadline = config.get("run_deadline_seconds")
    return Settings(
        keys=keys,
        db_path=env.get("SYNC_DB_PATH") or DEFAULT_DB_PATH,
        log_file=env.get("SYNC_LOG_FILE") or DEFAULT_LOG_FILE,
        max_concurrent=int(_positive(config, "max_concurrent", 1)),
        request_timeout=_positive(config, "request_timeout_seconds", 15.0),
        run_deadline=None if deadline is None else _positive(config, "run_deadline_seconds", 0),
        entity_delay=_non_negative(config, "entity_delay_seconds", 0.0),
        unreachable_after_failures=int(_positive(config, "unreachable_after_failures", 3)),
        costs=costs,
    )


def _load_yaml(path: str) -> Dict[str, Any]:
    """Load and return the YAML configuration, or {} if the file is absent."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {path} must be a mapping")
    return data


def _number(config: Dict[str, Any], key: str, default: float) -> float:
    value = config.get(key, default)
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from None


def _positive(config: Dict[str, Any], key: str, default: float) -> float:
    value = _number(config, key, default)
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {value!r}")
    return value


def _non_negative(config: Dict[str, Any], key: str, default: float) -> float:
    value = _number(config, key, default)
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got {value!r}")
    return value


def setup_logging(log_file: str, level: int = logging.INFO) -> None:
    """Send one line per event to stdout and append it to ``log_file``."""
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, "_channel_sync", False):
            root.removeHandler(handler)
            handler.close()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    try:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    except OSError as e:
        print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._channel_sync = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # aiosqlite debug chatter stays out of the run log
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
