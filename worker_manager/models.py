"""
Data models for Worker Manager.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import subprocess
from dataclasses import dataclass, field, asdict
from datetime import datetime
from collections import deque
from typing import Callable, Optional, Union

# Number of CPU history points to keep (at 1 sample per second = 300 points = 5 minutes of history)
CPU_HISTORY_SIZE = 300

EXEC_MODE_FORK = "fork"
EXEC_MODE_CLUSTER = "cluster"
EXEC_MODES = (EXEC_MODE_FORK, EXEC_MODE_CLUSTER)

STATUS_LAUNCHING = "launching"
STATUS_ONLINE = "online"
STATUS_STOPPING = "stopping"
STATUS_STOPPED = "stopped"
STATUS_ERRORED = "errored"
STATUS_NOT_FOUND = "not_found"

DEFAULT_COMPRESSION_LEVEL = 6


@dataclass(frozen=True)
class ProcessCallbacks:
    on_start: Optional[Callable] = None
    on_stop: Optional[Callable] = None
    on_restart: Optional[Callable] = None
    on_delete: Optional[Callable] = None


@dataclass(frozen=True)
class ProcessConfig:
    """Launch parameters for one supervised worker.

    Fields left as None are filled from the system-wide defaults when the
    process is launched (see lifecycle.apply_defaults).
    """
    name: str
    script: str
    args: Union[list, str] = None
    interpreter: str = None
    cwd: str = None
    env: dict = None
    instances: Union[int, str] = None  # int or "max"
    exec_mode: str = None  # "fork" or "cluster"
    watch: Union[bool, list] = None
    ignore_watch: list = None
    autorestart: bool = None
    max_memory_restart: str = None  # e.g. "200M"
    time: bool = None  # prefix log lines with a timestamp
    out_file: str = None
    error_file: str = None
    log_file: str = None
    callbacks: ProcessCallbacks = field(default_factory=ProcessCallbacks, compare=False)
    output_directory: str = None

    @classmethod
    def from_dict(cls, data: dict, callbacks: ProcessCallbacks = None) -> "ProcessConfig":
        """Build a config from a JSON/YAML mapping (camelCase keys are accepted)."""
        aliases = {
            "execMode": "exec_mode",
            "ignoreWatch": "ignore_watch",
            "maxMemoryRestart": "max_memory_restart",
            "outFile": "out_file",
            "errorFile": "error_file",
            "logFile": "log_file",
            "outputDirectory": "output_directory",
        }
        known = {f for f in cls.__dataclass_fields__ if f != "callbacks"}
        kwargs = {}
        for key, value in data.items():
            key = aliases.get(key, key)
            if key in known:
                kwargs[key] = value
        return cls(callbacks=callbacks or ProcessCallbacks(), **kwargs)


@dataclass
class ProcessDefaults:
    """System-wide launch defaults (the `defaults:` section of the config)."""
    args: list = None
    interpreter: str = None
    cwd: str = None
    env: dict = None
    instances: Union[int, str] = 1
    exec_mode: str = EXEC_MODE_FORK
    watch: Union[bool, list] = False
    ignore_watch: list = None
    autorestart: bool = True
    max_memory_restart: str = None
    time: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessDefaults":
        data = data or {}
        known = set(cls.__dataclass_fields__)
        defaults = cls()
        for key, value in data.items():
            key = {"execMode": "exec_mode", "ignoreWatch": "ignore_watch",
                   "maxMemoryRestart": "max_memory_restart"}.get(key, key)
            if key in known:
                setattr(defaults, key, value)
        return defaults


@dataclass(frozen=True)
class LaunchSpec:
    """Fully merged launch parameters handed to the supervisor."""
    name: str
    script: str
    cwd: str
    args: list = field(default_factory=list)
    interpreter: str = None
    env: dict = field(default_factory=dict)
    instances: Union[int, str] = 1
    exec_mode: str = EXEC_MODE_FORK
    watch: Union[bool, list] = False
    ignore_watch: list = field(default_factory=list)
    autorestart: bool = True
    max_memory_restart: str = None
    time: bool = False
    out_file: str = None
    error_file: str = None
    log_file: str = None


@dataclass
class ProcessInfo:
    """Snapshot of one worker as reported by the supervisor."""
    pm_id: int
    name: str
    pid: int = None
    status: str = STATUS_STOPPED
    cpu: float = 0.0
    memory: int = 0
    uptime: float = 0.0
    restarts: int = 0
    instance: int = 0
    exec_mode: str = EXEC_MODE_FORK

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ResultFile:
    name: str
    path: str
    size: int
    modified: datetime
    process_name: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "modified": self.modified.isoformat(),
            "processName": self.process_name,
        }


@dataclass
class ProcessResults:
    process_name: str
    files: list
    total_size: int
    file_count: int

    def to_dict(self) -> dict:
        return {
            "processName": self.process_name,
            "files": [f.to_dict() for f in self.files],
            "totalSize": self.total_size,
            "fileCount": self.file_count,
        }


@dataclass
class ZipArchiveOptions:
    include_process_name: bool = True
    flatten_structure: bool = False
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    password: str = None  # Accepted but not applied to the archive

    @classmethod
    def from_dict(cls, data: dict) -> "ZipArchiveOptions":
        if not data:
            return cls()
        level = data.get("compressionLevel", data.get("compression_level"))
        return cls(
            include_process_name=data.get("includeProcessName", data.get("include_process_name", True)) is not False,
            flatten_structure=bool(data.get("flattenStructure", data.get("flatten_structure", False))),
            compression_level=DEFAULT_COMPRESSION_LEVEL if level is None else level,
            password=data.get("password"),
        )


@dataclass
class ResultsStatistics:
    total_processes: int = 0
    total_files: int = 0
    total_size: int = 0
    processes_with_results: int = 0
    average_files_per_process: float = 0
    average_file_size: float = 0

    def to_dict(self) -> dict:
        return {
            "totalProcesses": self.total_processes,
            "totalFiles": self.total_files,
            "totalSize": self.total_size,
            "processesWithResults": self.processes_with_results,
            "averageFilesPerProcess": self.average_files_per_process,
            "averageFileSize": self.average_file_size,
        }


@dataclass
class Worker:
    """Runtime state of one OS process owned by the local supervisor."""
    pm_id: int
    name: str
    spec: LaunchSpec
    instance: int = 0
    process: subprocess.Popen = None
    pid: int = None
    status: str = STATUS_STOPPED
    consecutive_failures: int = 0
    is_broken: bool = False
    start_time: datetime = None
    last_restart: datetime = None
    total_restarts: int = 0
    _user_action_in_progress: bool = False  # Flag to prevent monitor interference during explicit actions
    cpu_history: deque = field(default_factory=lambda: deque(maxlen=CPU_HISTORY_SIZE))
    _psutil_process: object = None  # Cache psutil.Process object
