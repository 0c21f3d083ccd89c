"""
Worker Manager - Result statistics.

Copyright (C) 2025 Andreas Vogler

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.
"""

from .models import ResultsStatistics
from .results import ResultFileStore


class StatisticsAggregator:
    def __init__(self, store: ResultFileStore):
        self.store = store

    async def get_statistics(self) -> ResultsStatistics:
        all_results = await self.store.get_all_results()
        total_files = sum(r.file_count for r in all_results)
        total_size = sum(r.total_size for r in all_results)
        with_results = sum(1 for r in all_results if r.files)

        return ResultsStatistics(
            total_processes=len(self.store.registry),
            total_files=total_files,
            total_size=total_size,
            processes_with_results=with_results,
            average_files_per_process=total_files / with_results if with_results > 0 else 0,
            average_file_size=total_size / total_files if total_files > 0 else 0,
        )
