"""Controller configuration.

Read from a YAML file (``-c``, then ``$APP_CONFIG``, then
``/config/config.yaml``)::

    maxConcurrentReconciles: 4
    watchTimeoutSeconds: 60
    namespace: my-apps          # optional, default: all namespaces
    registerPopulator: true
    logLevel: INFO

Every key is optional. The default path may be absent; an explicitly given
path may not.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/config/config.yaml")


@dataclass
class PopulatorSettings:
    max_concurrent_reconciles: int = 4
    watch_timeout_seconds: int = 60
    namespace: str | None = None
    register_populator: bool = True
    log_level: str = "INFO"


def resolve_config_path(cli_path: str | None) -> Path:
    """Resolve the config file path from CLI, env, or default."""
    if cli_path:
        return Path(cli_path)
    env_path = os.getenv("APP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(cli_path: str | None) -> dict[str, Any]:
    """Load configuration from YAML file ({} if the default file is absent)."""
    path = resolve_config_path(cli_path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError:
        if path == DEFAULT_CONFIG_PATH:
            return {}
        logger.error(f"Config file not found: {path}")
        sys.exit(2)
    except Exception as exc:
        logger.error(f"Failed to read config {path}: {exc}")
        sys.exit(2)
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error("Config root must be a mapping")
        sys.exit(2)
    return data


def build_settings(cfg: dict[str, Any]) -> PopulatorSettings:
    """Validate a config mapping into PopulatorSettings (exit 2 on bad values)."""
    defaults = PopulatorSettings()
    try:
        settings = PopulatorSettings(
            max_concurrent_reconciles=int(cfg.get("maxConcurrentReconciles",
                                                  defaults.max_concurrent_reconciles)),
            watch_timeout_seconds=int(cfg.get("watchTimeoutSeconds", defaults.watch_timeout_seconds)),
            namespace=cfg.get("namespace") or None,
            register_populator=bool(cfg.get("registerPopulator", defaults.register_populator)),
            log_level=str(cfg.get("logLevel", defaults.log_level)).upper(),
        )
    except (TypeError, ValueError) as exc:
        logger.error(f"Invalid config value: {exc}")
        sys.exit(2)

    if settings.max_concurrent_reconciles < 1:
        logger.error("maxConcurrentReconciles must be at least 1")
        sys.exit(2)
    if settings.watch_timeout_seconds < 1:
        logger.error("watchTimeoutSeconds must be at least 1")
        sys.exit(2)
    if settings.log_level not in logging.getLevelNamesMapping():
        logger.error(f"Unknown logLevel: {settings.log_level}")
        sys.exit(2)
    return settings
