"""
Worker Manager - Configuration loading.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import ProcessDefaults

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "worker_manager.yaml"
CONFIG_ENV_VAR = "WORKER_MANAGER_CONFIG"
SCRIPTS_DIRECTORY_ENV_VAR = "SCRIPTS_DIRECTORY"


@dataclass
class ManagerOptions:
    base_dir: Path = field(default_factory=Path.cwd)
    output_directory: Path = None  # Default: <base_dir>/process-results
    scripts_directory: Path = None  # Default: <base_dir>/process-scripts
    log_dir: Path = None  # Default: <base_dir>/log
    max_processes: int = 0  # 0 means unlimited
    log_level: str = "INFO"
    max_log_size_mb: float = 10
    restart_delay: float = 1
    max_consecutive_failures: int = 10
    failure_reset_seconds: float = 60
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    defaults: ProcessDefaults = field(default_factory=ProcessDefaults)

    def __post_init__(self):
        self.base_dir = Path(self.base_dir).resolve()
        self.output_directory = self.resolve(self.output_directory or "process-results")
        self.scripts_directory = self.resolve(self.scripts_directory or "process-scripts")
        self.log_dir = self.resolve(self.log_dir or "log")

    def resolve(self, path) -> Path:
        """Resolve a relative path against base_dir; absolute paths are kept."""
        path = Path(path)
        if not path.is_absolute():
            path = self.base_dir / path
        return path


def load_config(config_path=None, environ=None) -> ManagerOptions:
    """Load options from YAML, then apply environment overrides.

    Relative paths in the file are resolved against the file's directory.
    A missing file yields the defaults.
    """
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)
    config_path = Path(config_path).resolve()

    config = {}
    if config_path.exists():
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
    else:
        logger.warning("Config file %s not found, using defaults", config_path)

    options = ManagerOptions(
        base_dir=config_path.parent,
        output_directory=config.get("output_directory"),
        scripts_directory=config.get("scripts_directory"),
        log_dir=config.get("log_dir"),
        max_processes=config.get("max_processes", 0),
        log_level=config.get("logging", {}).get("level", "INFO"),
        max_log_size_mb=config.get("logging", {}).get("max_size_mb", 10),
        restart_delay=config.get("restart", {}).get("delay_seconds", 1),
        max_consecutive_failures=config.get("restart", {}).get("max_consecutive_failures", 10),
        failure_reset_seconds=config.get("restart", {}).get("failure_reset_seconds", 60),
        api_host=config.get("api", {}).get("host", "0.0.0.0"),
        api_port=config.get("api", {}).get("port", 3000),
        defaults=ProcessDefaults.from_dict(config.get("defaults")),
    )

    # Read once at startup; wins over the file
    scripts_override = environ.get(SCRIPTS_DIRECTORY_ENV_VAR)
    if scripts_override:
        options.scripts_directory = options.resolve(scripts_override)

    return options
