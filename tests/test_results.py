import os
import time
from pathlib import Path

import pytest

from worker_manager.errors import FilesystemError, NotFoundError, ValidationError
from worker_manager.models import ProcessConfig


async def create(manager, name="job", **kwargs):
    return await manager.create_process(ProcessConfig(name=name, script=f"{name}.js", **kwargs))


@pytest.mark.asyncio
async def test_job_scenario(manager, options):
    pm_id = await create(manager)
    await manager.save_result_file(pm_id, "a.txt", "hello")
    await manager.save_result_file(pm_id, "b.txt", "!")

    results = await manager.get_process_results(pm_id)
    assert results.process_name == "job"
    assert results.file_count == 2
    assert results.total_size == 6

    zip_path = await manager.create_process_results_zip(pm_id)
    assert Path(zip_path).exists()

    await manager.clear_process_results(pm_id)
    assert await manager.get_process_result_files(pm_id) == []


@pytest.mark.asyncio
async def test_save_writes_under_output_root(manager, options):
    pm_id = await create(manager)

    path = await manager.save_result_file(pm_id, "report.json", '{"ok": true}')

    assert Path(path) == (options.output_directory / "job" / "report.json").resolve()
    assert Path(path).read_text() == '{"ok": true}'


@pytest.mark.asyncio
async def test_save_bytes_and_overwrite(manager):
    pm_id = await create(manager)

    await manager.save_result_file(pm_id, "blob.bin", b"\x00\x01\x02")
    path = await manager.save_result_file(pm_id, "blob.bin", b"\xff")

    assert Path(path).read_bytes() == b"\xff"
    files = await manager.get_process_result_files(pm_id)
    assert [(f.name, f.size) for f in files] == [("blob.bin", 1)]


@pytest.mark.asyncio
async def test_output_directory_override(manager, options):
    pm_id = await create(manager, output_directory="special")

    path = await manager.save_result_file(pm_id, "x.txt", "x")

    assert Path(path) == (options.base_dir / "special" / "job" / "x.txt").resolve()


@pytest.mark.asyncio
async def test_list_is_newest_first_and_skips_directories(manager, options):
    pm_id = await create(manager)
    old = Path(await manager.save_result_file(pm_id, "old.txt", "1"))
    new = Path(await manager.save_result_file(pm_id, "new.txt", "22"))
    (options.output_directory / "job" / "subdir").mkdir()
    now = time.time()
    os.utime(old, (now - 100, now - 100))
    os.utime(new, (now, now))

    files = await manager.get_process_result_files(pm_id)

    assert [f.name for f in files] == ["new.txt", "old.txt"]
    assert files[0].size == 2
    assert files[0].process_name == "job"
    assert files[0].to_dict()["processName"] == "job"


@pytest.mark.asyncio
async def test_list_without_directory_is_empty(manager):
    pm_id = await create(manager)
    assert await manager.get_process_result_files(pm_id) == []


@pytest.mark.asyncio
async def test_delete_result_file(manager):
    pm_id = await create(manager)
    path = await manager.save_result_file(pm_id, "gone.txt", "bye")

    await manager.delete_result_file(pm_id, "gone.txt")

    assert not Path(path).exists()
    assert await manager.get_process_result_files(pm_id) == []


@pytest.mark.asyncio
async def test_delete_missing_file_raises_not_found(manager):
    pm_id = await create(manager)
    with pytest.raises(NotFoundError):
        await manager.delete_result_file(pm_id, "never.txt")


@pytest.mark.asyncio
@pytest.mark.parametrize("file_name", ["../escape.txt", "sub/file.txt", "", "bad\x00.txt"])
async def test_invalid_file_names_are_rejected(manager, options, file_name):
    pm_id = await create(manager)

    with pytest.raises(ValidationError):
        await manager.save_result_file(pm_id, file_name, "x")
    with pytest.raises(ValidationError):
        await manager.delete_result_file(pm_id, file_name)
    assert not (options.output_directory / "escape.txt").exists()


@pytest.mark.asyncio
async def test_unknown_process_raises_not_found(manager):
    with pytest.raises(NotFoundError):
        await manager.save_result_file(7, "x.txt", "x")
    with pytest.raises(NotFoundError):
        await manager.get_process_result_files(7)
    with pytest.raises(NotFoundError):
        await manager.clear_process_results(7)


@pytest.mark.asyncio
async def test_clear_without_directory_is_noop(manager):
    pm_id = await create(manager)
    await manager.clear_process_results(pm_id)
    assert await manager.get_process_result_files(pm_id) == []


@pytest.mark.asyncio
async def test_clear_all_and_get_all_results(manager):
    a = await create(manager, "a")
    b = await create(manager, "b")
    await create(manager, "c")
    await manager.save_result_file(a, "1.txt", "one")
    await manager.save_result_file(b, "2.txt", "two")
    await manager.save_result_file(b, "3.txt", "three")

    all_results = {r.process_name: r for r in await manager.get_all_process_results()}
    assert set(all_results) == {"a", "b", "c"}
    assert all_results["b"].file_count == 2
    assert all_results["b"].total_size == 8
    assert all_results["c"].file_count == 0
    assert all_results["b"].to_dict()["fileCount"] == 2

    await manager.clear_all_results()

    assert all(r.file_count == 0 for r in await manager.get_all_process_results())


@pytest.mark.asyncio
async def test_unreadable_file_does_not_hide_the_rest(manager, monkeypatch, caplog):
    pm_id = await create(manager)
    await manager.save_result_file(pm_id, "good.txt", "ok")
    await manager.save_result_file(pm_id, "bad.txt", "locked")
    original_stat = Path.stat

    def stat(self, *args, **kwargs):
        if self.name == "bad.txt":
            raise PermissionError(13, "Permission denied", str(self))
        return original_stat(self, *args, **kwargs)

    monkeypatch.setattr(Path, "stat", stat)

    files = await manager.get_process_result_files(pm_id)

    assert [f.name for f in files] == ["good.txt"]
    assert "bad.txt" in caplog.text


@pytest.mark.asyncio
async def test_get_all_results_skips_failing_process(manager, monkeypatch, caplog):
    a = await create(manager, "a")
    b = await create(manager, "b")
    await manager.save_result_file(a, "1.txt", "one")
    await manager.save_result_file(b, "2.txt", "two")
    original = manager.results.get_results

    async def get_results(pm_id):
        if pm_id == a:
            raise FilesystemError("disk gone")
        return await original(pm_id)

    monkeypatch.setattr(manager.results, "get_results", get_results)

    all_results = await manager.get_all_process_results()

    assert [r.process_name for r in all_results] == ["b"]
    assert "disk gone" in caplog.text


@pytest.mark.asyncio
async def test_clear_all_continues_past_failing_process(manager, monkeypatch, caplog):
    a = await create(manager, "a")
    b = await create(manager, "b")
    await manager.save_result_file(a, "1.txt", "one")
    await manager.save_result_file(b, "2.txt", "two")
    original = manager.results.clear

    async def clear(pm_id):
        if pm_id == a:
            raise FilesystemError("read-only")
        await original(pm_id)

    monkeypatch.setattr(manager.results, "clear", clear)

    await manager.clear_all_results()

    assert [f.name for f in await manager.get_process_result_files(a)] == ["1.txt"]
    assert await manager.get_process_result_files(b) == []
    assert "read-only" in caplog.text
