"""
Worker Manager - Registry of the processes this manager created.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

from .errors import NotFoundError
from .models import ProcessConfig


class ProcessRegistry:
    """Maps supervisor identities to the config they were created with.

    Only touched from the event loop thread, so no locking.
    """

    def __init__(self):
        self._processes: dict[int, ProcessConfig] = {}

    def __contains__(self, pm_id) -> bool:
        return pm_id in self._processes

    def __len__(self) -> int:
        return len(self._processes)

    def add(self, pm_id: int, config: ProcessConfig):
        self._processes[pm_id] = config

    def get(self, pm_id: int) -> ProcessConfig:
        return self._processes.get(pm_id)

    def require(self, pm_id: int) -> ProcessConfig:
        config = self._processes.get(pm_id)
        if config is None:
            raise NotFoundError(f"Process with ID {pm_id} not found")
        return config

    def remove(self, pm_id: int) -> ProcessConfig:
        return self._processes.pop(pm_id)

    def ids(self) -> list[int]:
        return list(self._processes)

    def items(self) -> list[tuple[int, ProcessConfig]]:
        # Snapshot, callers may await between iterations
        return list(self._processes.items())

    def name_of(self, pm_id: int) -> str:
        config = self._processes.get(pm_id)
        return config.name if config else f"ID:{pm_id}"

    def has_name(self, name: str) -> bool:
        return any(config.name == name for config in self._processes.values())
