"""
Worker Manager - Input validation for names, paths and environments.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

Every check here is pure: it either returns or raises ValidationError.
They run before any filesystem or supervisor call is made.
"""

import re
from collections.abc import Mapping
from pathlib import PurePosixPath, PureWindowsPath

from .errors import ValidationError
from .models import ProcessConfig, EXEC_MODES

MAX_NAME_LENGTH = 255
MAX_PATH_LENGTH = 1024
MAX_ENV_KEY_LENGTH = 255
MAX_ENV_VALUE_LENGTH = 1024

# C0 controls, DEL and C1 controls
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")

MEMORY_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([BKMG]?)B?\s*$", re.IGNORECASE)


def parse_memory(value) -> int:
    """Parse a memory limit such as "200M" or "1.5G" into bytes."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    match = MEMORY_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid memory limit: {value!r}")
    number, unit = match.groups()
    return int(float(number) * MEMORY_UNITS[unit.upper()])


def _check_string(value, what: str, max_length: int):
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{what} must be a non-empty string")
    if CONTROL_CHARS.search(value):
        raise ValidationError(f"{what} contains invalid control characters")
    if len(value) > max_length:
        raise ValidationError(f"{what} is too long (max {max_length} characters)")


def _has_separator(value: str) -> bool:
    return "/" in value or "\\" in value


def validate_identifier(value, what: str = "Name"):
    """Check a process name or result file name."""
    _check_string(value, what, MAX_NAME_LENGTH)
    if ".." in value or _has_separator(value):
        raise ValidationError(f"{what} contains invalid characters")


def validate_relative_path(value, what: str = "Path"):
    """Check a script path, working directory or output directory."""
    _check_string(value, what, MAX_PATH_LENGTH)
    if ".." in value:
        raise ValidationError(f"{what} contains path traversal attempt")
    if PurePosixPath(value).is_absolute() or PureWindowsPath(value).is_absolute() or value.startswith("\\"):
        raise ValidationError(f"{what} cannot be absolute")


def validate_environment(env):
    if env is None:
        return
    if not isinstance(env, Mapping):
        raise ValidationError("Environment must be a mapping of strings")

    for key, value in env.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValidationError("Environment variable keys and values must be strings")
        if not key:
            raise ValidationError("Environment variable key must not be empty")
        if ".." in key or _has_separator(key):
            raise ValidationError(f"Environment variable key '{key}' contains invalid characters")
        if ".." in value or _has_separator(value):
            raise ValidationError(f"Environment variable '{key}' value contains path traversal attempt")
        if CONTROL_CHARS.search(key) or CONTROL_CHARS.search(value):
            raise ValidationError("Environment variable contains invalid control characters")
        if len(key) > MAX_ENV_KEY_LENGTH or len(value) > MAX_ENV_VALUE_LENGTH:
            raise ValidationError(f"Environment variable '{key[:32]}' key or value is too long")


def validate_process_config(config: ProcessConfig):
    """Run every check that applies to a process config."""
    validate_identifier(config.name, "Process name")
    validate_relative_path(config.script, "Script path")
    if config.cwd is not None:
        validate_relative_path(config.cwd, "Working directory")
    if config.output_directory is not None:
        validate_relative_path(config.output_directory, "Output directory")
    validate_environment(config.env)

    if config.instances is not None and config.instances != "max":
        if isinstance(config.instances, bool) or not isinstance(config.instances, int) or config.instances < 1:
            raise ValidationError("Instances must be a positive integer or 'max'")
    if config.exec_mode is not None and config.exec_mode not in EXEC_MODES:
        raise ValidationError(f"Execution mode must be one of: {', '.join(EXEC_MODES)}")
    if config.max_memory_restart is not None:
        try:
            parse_memory(config.max_memory_restart)
        except ValueError as e:
            raise ValidationError(str(e)) from e
    if config.args is not None and not isinstance(config.args, (list, tuple, str)):
        raise ValidationError("Arguments must be a string or a list")
