"""
Worker Manager - Per-process result file store.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Union

from .errors import FilesystemError, ManagerError, NotFoundError
from .models import ProcessConfig, ProcessResults, ResultFile
from .registry import ProcessRegistry
from .validation import validate_identifier

logger = logging.getLogger(__name__)


class ResultFileStore:
    """Files written on behalf of a process, one directory per process name.

    Directories are created on the first write. Deleting a process does not
    touch its directory.
    """

    def __init__(self, registry: ProcessRegistry, output_root: Path, base_dir: Path = None):
        self.registry = registry
        self.output_root = Path(output_root)
        self.base_dir = Path(base_dir or Path.cwd())

    def directory_for(self, config: ProcessConfig) -> Path:
        root = self.output_root
        if config.output_directory:
            root = self.base_dir / config.output_directory
        return root / config.name

    @staticmethod
    def _write(path: Path, content: Union[str, bytes]):
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")

    @staticmethod
    def _scan(directory: Path, process_name: str) -> list[ResultFile]:
        if not directory.is_dir():
            return []
        files = []
        for entry in directory.iterdir():
            try:
                if not entry.is_file():
                    continue
                stat = entry.stat()
                path = str(entry.resolve())
            except FileNotFoundError:
                # Removed between listing and stat
                continue
            except OSError as e:
                logger.warning("[%s] Skipping unreadable result file %s: %s", process_name, entry.name, e)
                continue
            files.append(ResultFile(
                name=entry.name,
                path=path,
                size=stat.st_size,
                modified=datetime.fromtimestamp(stat.st_mtime),
                process_name=process_name,
            ))
        files.sort(key=lambda f: f.modified, reverse=True)
        return files

    @staticmethod
    def _unlink_files(directory: Path) -> int:
        if not directory.is_dir():
            return 0
        count = 0
        for entry in directory.iterdir():
            if entry.is_file():
                entry.unlink()
                count += 1
        return count

    async def save(self, pm_id: int, file_name: str, content: Union[str, bytes]) -> str:
        validate_identifier(file_name, "File name")
        config = self.registry.require(pm_id)
        path = self.directory_for(config) / file_name
        try:
            await asyncio.to_thread(self._write, path, content)
        except OSError as e:
            logger.error("[%s] Failed to save result file %s: %s", config.name, file_name, e)
            raise FilesystemError(f"Failed to save result file {file_name}: {e}") from e
        logger.debug("[%s] Saved result file %s", config.name, file_name)
        return str(path.resolve())

    async def list(self, pm_id: int) -> list[ResultFile]:
        config = self.registry.require(pm_id)
        directory = self.directory_for(config)
        try:
            return await asyncio.to_thread(self._scan, directory, config.name)
        except OSError as e:
            logger.error("[%s] Failed to list result files: %s", config.name, e)
            return []

    async def delete(self, pm_id: int, file_name: str):
        validate_identifier(file_name, "File name")
        config = self.registry.require(pm_id)
        path = self.directory_for(config) / file_name
        if not await asyncio.to_thread(path.is_file):
            raise NotFoundError(f"Result file {file_name} not found for process {config.name}")
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as e:
            logger.error("[%s] Failed to delete result file %s: %s", config.name, file_name, e)
            raise FilesystemError(f"Failed to delete result file {file_name}: {e}") from e
        logger.info("[%s] Deleted result file %s", config.name, file_name)

    async def clear(self, pm_id: int):
        config = self.registry.require(pm_id)
        directory = self.directory_for(config)
        try:
            count = await asyncio.to_thread(self._unlink_files, directory)
        except OSError as e:
            logger.error("[%s] Failed to clear result files: %s", config.name, e)
            raise FilesystemError(f"Failed to clear results for {config.name}: {e}") from e
        if count:
            logger.info("[%s] Cleared %d result files", config.name, count)

    async def clear_all(self):
        for pm_id, config in self.registry.items():
            try:
                await self.clear(pm_id)
            except ManagerError as e:
                logger.error("[%s] Skipping clear: %s", config.name, e)

    async def get_results(self, pm_id: int) -> ProcessResults:
        config = self.registry.require(pm_id)
        files = await self.list(pm_id)
        return ProcessResults(
            process_name=config.name,
            files=files,
            total_size=sum(f.size for f in files),
            file_count=len(files),
        )

    async def get_all_results(self):
        results = []
        for pm_id, config in self.registry.items():
            try:
                results.append(await self.get_results(pm_id))
            except ManagerError as e:
                logger.error("[%s] Skipping results: %s", config.name, e)
        return results
