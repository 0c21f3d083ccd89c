"""
Worker Manager - Zip archives of result files.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

import asyncio
import logging
import time
import zipfile
from dataclasses import replace
from pathlib import Path

from .errors import ArchiveError, NoFilesError, ValidationError
from .models import ZipArchiveOptions
from .results import ResultFileStore

logger = logging.getLogger(__name__)


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def _write_zip(zip_path: Path, entries: list[tuple[str, str]], level: int) -> int:
    """Write (source path, archive name) pairs; returns the archive size."""
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    if level == 0:
        compression, compresslevel = zipfile.ZIP_STORED, None
    else:
        compression, compresslevel = zipfile.ZIP_DEFLATED, level
    with zipfile.ZipFile(zip_path, "w", compression=compression, compresslevel=compresslevel) as zf:
        for source, arcname in entries:
            zf.write(source, arcname=arcname)
    return zip_path.stat().st_size


class ArchiveBuilder:
    """Bundles result files into zip archives under the output root."""

    def __init__(self, store: ResultFileStore):
        self.store = store

    def _check_options(self, options: ZipArchiveOptions) -> ZipArchiveOptions:
        options = options or ZipArchiveOptions()
        level = options.compression_level
        if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= 9:
            raise ValidationError("Compression level must be an integer between 0 and 9")
        if options.password:
            logger.warning("Zip password protection is not supported, archive will be unencrypted")
        # Only an explicit False drops the process directory
        return replace(options, include_process_name=options.include_process_name is not False)

    async def _build(self, zip_path: Path, entries: list[tuple[str, str]], level: int) -> str:
        try:
            size = await asyncio.to_thread(_write_zip, zip_path, entries, level)
        except (OSError, zipfile.BadZipFile) as e:
            logger.error("Failed to create zip archive %s: %s", zip_path, e)
            if zip_path.is_file():
                zip_path.unlink()
            raise ArchiveError(f"Failed to create zip archive {zip_path}: {e}") from e
        logger.info("Zip archive created: %s (%d bytes)", zip_path, size)
        return str(zip_path)

    async def build_for_process(self, pm_id: int, output_path=None, options: ZipArchiveOptions = None) -> str:
        options = self._check_options(options)
        results = await self.store.get_results(pm_id)
        name = results.process_name
        if not results.files:
            raise NoFilesError(f"No result files found for process {name}")

        zip_path = Path(output_path) if output_path else \
            self.store.output_root / f"{name}-results-{_timestamp_ms()}.zip"
        entries = [
            (f.path, f"{name}/{f.name}" if options.include_process_name else f.name)
            for f in results.files
        ]
        return await self._build(zip_path, entries, options.compression_level)

    async def build_for_all(self, output_path=None, options: ZipArchiveOptions = None) -> str:
        options = self._check_options(options)
        all_results = await self.store.get_all_results()
        if not any(results.files for results in all_results):
            raise NoFilesError("No result files found for any process")

        zip_path = Path(output_path) if output_path else \
            self.store.output_root / f"all-processes-results-{_timestamp_ms()}.zip"
        entries = []
        seen = set()
        for results in all_results:
            name = results.process_name
            for f in results.files:
                if options.flatten_structure:
                    arcname = f"{name}-{f.name}"
                elif options.include_process_name:
                    arcname = f"{name}/{f.name}"
                else:
                    arcname = f.name
                if arcname in seen:
                    logger.warning("[%s] Skipping %s, an archive entry with that name already exists", name, arcname)
                    continue
                seen.add(arcname)
                entries.append((f.path, arcname))
        return await self._build(zip_path, entries, options.compression_level)
