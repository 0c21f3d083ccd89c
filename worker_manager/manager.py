"""
Worker Manager - Control surface tying lifecycle, results and archives together.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import asyncio
import logging
from pathlib import Path
from typing import Union

from .archive import ArchiveBuilder
from .config import ManagerOptions
from .errors import ValidationError
from .lifecycle import LifecycleController, terminate_host
from .models import ProcessConfig, ProcessInfo, ProcessResults, ResultFile, ResultsStatistics, ZipArchiveOptions
from .registry import ProcessRegistry
from .results import ResultFileStore
from .statistics import StatisticsAggregator
from .supervisor import LocalSupervisor, SupervisorAdapter

logger = logging.getLogger(__name__)

SCRIPT_EXTENSIONS = (".js", ".ts", ".py", ".sh")


class ProcessManager:
    """Manages supervised worker processes and the result files they produce.

    Every coroutine must run on the same event loop. When no supervisor is
    given a LocalSupervisor is built from the options.
    """

    def __init__(self, options: ManagerOptions = None, supervisor: SupervisorAdapter = None,
                 exit_func=terminate_host):
        self.options = options or ManagerOptions()
        if supervisor is None:
            supervisor = LocalSupervisor(
                log_dir=self.options.log_dir,
                restart_delay=self.options.restart_delay,
                max_failures=self.options.max_consecutive_failures,
                failure_reset_seconds=self.options.failure_reset_seconds,
                max_log_size_mb=self.options.max_log_size_mb,
            )
        self.supervisor = supervisor
        self.registry = ProcessRegistry()
        self.lifecycle = LifecycleController(
            supervisor,
            self.registry,
            defaults=self.options.defaults,
            base_dir=self.options.base_dir,
            scripts_dir=self.options.scripts_directory,
            max_processes=self.options.max_processes,
            exit_func=exit_func,
        )
        self.results = ResultFileStore(self.registry, self.options.output_directory, self.options.base_dir)
        self.archives = ArchiveBuilder(self.results)
        self.statistics = StatisticsAggregator(self.results)

        self.ensure_directories()

    def ensure_directories(self):
        for directory in (self.options.output_directory, self.options.scripts_directory):
            try:
                Path(directory).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("Failed to create directory %s: %s", directory, e)

    async def init(self):
        await self.lifecycle.init()

    async def disconnect(self):
        await self.lifecycle.disconnect()

    async def create_process(self, config: Union[ProcessConfig, dict]) -> int:
        if isinstance(config, dict):
            if not config.get("name") or not config.get("script"):
                raise ValidationError("Process name and script are required")
            config = ProcessConfig.from_dict(config)
        return await self.lifecycle.create(config)

    async def start_process(self, pm_id: int):
        await self.lifecycle.start(pm_id)

    async def stop_process(self, pm_id: int):
        await self.lifecycle.stop(pm_id)

    async def restart_process(self, pm_id: int):
        await self.lifecycle.restart(pm_id)

    async def delete_process(self, pm_id: int):
        await self.lifecycle.delete(pm_id)

    async def get_process_info(self, pm_id: int) -> ProcessInfo:
        return await self.lifecycle.get_info(pm_id)

    async def get_all_processes(self) -> list[ProcessInfo]:
        return await self.lifecycle.get_all()

    async def get_process_status(self, pm_id: int) -> str:
        return await self.lifecycle.get_status(pm_id)

    async def stop_all_processes(self):
        await self.lifecycle.stop_all()

    async def restart_all_processes(self):
        await self.lifecycle.restart_all()

    async def force_shutdown(self):
        await self.lifecycle.force_shutdown()

    async def save_result_file(self, pm_id: int, file_name: str, content: Union[str, bytes]) -> str:
        return await self.results.save(pm_id, file_name, content)

    async def get_process_result_files(self, pm_id: int) -> list[ResultFile]:
        return await self.results.list(pm_id)

    async def get_process_results(self, pm_id: int) -> ProcessResults:
        return await self.results.get_results(pm_id)

    async def get_all_process_results(self) -> list[ProcessResults]:
        return await self.results.get_all_results()

    async def delete_result_file(self, pm_id: int, file_name: str):
        await self.results.delete(pm_id, file_name)

    async def clear_process_results(self, pm_id: int):
        await self.results.clear(pm_id)

    async def clear_all_results(self):
        await self.results.clear_all()

    async def create_process_results_zip(self, pm_id: int, output_path=None,
                                         options: Union[ZipArchiveOptions, dict] = None) -> str:
        if not isinstance(options, ZipArchiveOptions):
            options = ZipArchiveOptions.from_dict(options)
        return await self.archives.build_for_process(pm_id, output_path, options)

    async def create_all_results_zip(self, output_path=None,
                                     options: Union[ZipArchiveOptions, dict] = None) -> str:
        if not isinstance(options, ZipArchiveOptions):
            options = ZipArchiveOptions.from_dict(options)
        return await self.archives.build_for_all(output_path, options)

    async def get_results_statistics(self) -> ResultsStatistics:
        return await self.statistics.get_statistics()

    def get_scripts_directory(self) -> str:
        return str(self.options.scripts_directory)

    def _scan_scripts(self) -> list[str]:
        directory = Path(self.options.scripts_directory)
        if not directory.is_dir():
            return []
        return sorted(
            entry.name for entry in directory.iterdir()
            if entry.is_file() and entry.suffix in SCRIPT_EXTENSIONS
        )

    async def get_available_scripts(self) -> list[str]:
        try:
            return await asyncio.to_thread(self._scan_scripts)
        except OSError as e:
            logger.error("Error reading scripts directory: %s", e)
            return []

    def has_process(self, pm_id: int) -> bool:
        return pm_id in self.registry

    def get_process_ids(self) -> list[int]:
        return self.registry.ids()

    def get_process_name(self, pm_id: int) -> str:
        return self.registry.name_of(pm_id)

    def get_active_process_count(self) -> int:
        return len(self.registry)
