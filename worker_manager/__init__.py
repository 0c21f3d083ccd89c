"""
Worker Manager - Supervised worker processes with per-process result files.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

from .config import ManagerOptions, load_config
from .errors import (
    ManagerError, ValidationError, NotFoundError, ProcessLimitError,
    SupervisorError, FilesystemError, ArchiveError, NoFilesError,
)
from .manager import ProcessManager
from .models import (
    ProcessCallbacks, ProcessConfig, ProcessDefaults, ProcessInfo,
    ResultFile, ProcessResults, ResultsStatistics, ZipArchiveOptions,
)
from .supervisor import LocalSupervisor, SupervisorAdapter
from .web_handler import WebHandler

__version__ = "1.0.0"
__all__ = [
    "ProcessManager", "ManagerOptions", "load_config",
    "ProcessCallbacks", "ProcessConfig", "ProcessDefaults", "ProcessInfo",
    "ResultFile", "ProcessResults", "ResultsStatistics", "ZipArchiveOptions",
    "LocalSupervisor", "SupervisorAdapter", "WebHandler",
    "ManagerError", "ValidationError", "NotFoundError", "ProcessLimitError",
    "SupervisorError", "FilesystemError", "ArchiveError", "NoFilesError",
]
