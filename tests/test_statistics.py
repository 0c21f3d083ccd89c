import pytest

from worker_manager.models import ProcessConfig


@pytest.mark.asyncio
async def test_empty_registry_is_all_zero(manager):
    stats = await manager.get_results_statistics()

    assert stats.to_dict() == {
        "totalProcesses": 0,
        "totalFiles": 0,
        "totalSize": 0,
        "processesWithResults": 0,
        "averageFilesPerProcess": 0,
        "averageFileSize": 0,
    }


@pytest.mark.asyncio
async def test_processes_without_files_do_not_divide_by_zero(manager):
    await manager.create_process(ProcessConfig(name="idle", script="idle.js"))

    stats = await manager.get_results_statistics()

    assert stats.total_processes == 1
    assert stats.processes_with_results == 0
    assert stats.average_files_per_process == 0
    assert stats.average_file_size == 0


@pytest.mark.asyncio
async def test_averages_only_count_processes_with_results(manager):
    a = await manager.create_process(ProcessConfig(name="a", script="a.js"))
    b = await manager.create_process(ProcessConfig(name="b", script="b.js"))
    await manager.create_process(ProcessConfig(name="c", script="c.js"))
    await manager.save_result_file(a, "1.txt", "1234")
    await manager.save_result_file(b, "2.txt", "12")
    await manager.save_result_file(b, "3.txt", "123456")

    stats = await manager.get_results_statistics()

    assert stats.total_processes == 3
    assert stats.total_files == 3
    assert stats.total_size == 12
    assert stats.processes_with_results == 2
    assert stats.average_files_per_process == 1.5
    assert stats.average_file_size == 4
