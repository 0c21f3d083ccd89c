import re
import zipfile
from pathlib import Path

import pytest

from worker_manager.errors import ArchiveError, NoFilesError, ValidationError
from worker_manager.models import ProcessConfig, ZipArchiveOptions


async def create_with_files(manager, name, files):
    pm_id = await manager.create_process(ProcessConfig(name=name, script=f"{name}.js"))
    for file_name, content in files.items():
        await manager.save_result_file(pm_id, file_name, content)
    return pm_id


def names_in(zip_path):
    with zipfile.ZipFile(zip_path) as zf:
        return sorted(zf.namelist())


@pytest.mark.asyncio
async def test_process_zip_without_files_raises(manager):
    pm_id = await create_with_files(manager, "empty", {})

    with pytest.raises(NoFilesError):
        await manager.create_process_results_zip(pm_id)


@pytest.mark.asyncio
async def test_process_zip_default_path_and_entries(manager, options):
    pm_id = await create_with_files(manager, "job", {"a.txt": "hello", "b.txt": "!"})

    zip_path = Path(await manager.create_process_results_zip(pm_id))

    assert zip_path.parent == options.output_directory
    assert re.fullmatch(r"job-results-\d+\.zip", zip_path.name)
    assert names_in(zip_path) == ["job/a.txt", "job/b.txt"]
    with zipfile.ZipFile(zip_path) as zf:
        assert zf.read("job/a.txt") == b"hello"
        assert zf.getinfo("job/a.txt").compress_type == zipfile.ZIP_DEFLATED


@pytest.mark.asyncio
async def test_process_zip_without_process_name(manager, tmp_path):
    pm_id = await create_with_files(manager, "job", {"a.txt": "hello"})
    target = tmp_path / "archives" / "job.zip"

    zip_path = await manager.create_process_results_zip(pm_id, str(target), {"includeProcessName": False})

    assert Path(zip_path) == target
    assert names_in(target) == ["a.txt"]


@pytest.mark.asyncio
async def test_compression_level_zero_stores(manager, tmp_path):
    pm_id = await create_with_files(manager, "job", {"a.txt": "a" * 1000})

    zip_path = await manager.create_process_results_zip(
        pm_id, str(tmp_path / "stored.zip"), ZipArchiveOptions(compression_level=0))

    with zipfile.ZipFile(zip_path) as zf:
        assert zf.getinfo("job/a.txt").compress_type == zipfile.ZIP_STORED


@pytest.mark.asyncio
@pytest.mark.parametrize("level", [-1, 10, "6", 1.5])
async def test_invalid_compression_level(manager, level):
    pm_id = await create_with_files(manager, "job", {"a.txt": "a"})

    with pytest.raises(ValidationError):
        await manager.create_process_results_zip(pm_id, options=ZipArchiveOptions(compression_level=level))


@pytest.mark.asyncio
async def test_password_is_ignored_with_warning(manager, tmp_path, caplog):
    pm_id = await create_with_files(manager, "job", {"a.txt": "a"})

    zip_path = await manager.create_process_results_zip(pm_id, str(tmp_path / "p.zip"), {"password": "secret"})

    assert "password protection is not supported" in caplog.text
    with zipfile.ZipFile(zip_path) as zf:
        assert zf.read("job/a.txt") == b"a"


@pytest.mark.asyncio
async def test_write_failure_raises_archive_error(manager, tmp_path):
    pm_id = await create_with_files(manager, "job", {"a.txt": "a"})
    directory = tmp_path / "is-a-directory"
    directory.mkdir()

    with pytest.raises(ArchiveError):
        await manager.create_process_results_zip(pm_id, str(directory))
    assert directory.is_dir()


@pytest.mark.asyncio
async def test_all_zip_without_files_raises(manager):
    await create_with_files(manager, "a", {})

    with pytest.raises(NoFilesError):
        await manager.create_all_results_zip()


@pytest.mark.asyncio
async def test_all_zip_default_naming(manager, options):
    await create_with_files(manager, "a", {"1.txt": "one"})
    await create_with_files(manager, "b", {"2.txt": "two"})
    await create_with_files(manager, "c", {})

    zip_path = Path(await manager.create_all_results_zip())

    assert zip_path.parent == options.output_directory
    assert re.fullmatch(r"all-processes-results-\d+\.zip", zip_path.name)
    assert names_in(zip_path) == ["a/1.txt", "b/2.txt"]


@pytest.mark.asyncio
@pytest.mark.parametrize("opts, expected", [
    ({"flattenStructure": True}, ["a-1.txt", "b-2.txt"]),
    ({"flattenStructure": True, "includeProcessName": False}, ["a-1.txt", "b-2.txt"]),
    ({"includeProcessName": False}, ["1.txt", "2.txt"]),
])
async def test_all_zip_naming_options(manager, tmp_path, opts, expected):
    await create_with_files(manager, "a", {"1.txt": "one"})
    await create_with_files(manager, "b", {"2.txt": "two"})

    zip_path = await manager.create_all_results_zip(str(tmp_path / "all.zip"), opts)

    assert names_in(zip_path) == expected


@pytest.mark.asyncio
async def test_unset_include_process_name_nests_entries(manager, tmp_path):
    pm_id = await create_with_files(manager, "job", {"a.txt": "hello"})
    await create_with_files(manager, "other", {"b.txt": "bye"})
    opts = ZipArchiveOptions(include_process_name=None)

    single = await manager.create_process_results_zip(pm_id, str(tmp_path / "one.zip"), opts)
    combined = await manager.create_all_results_zip(str(tmp_path / "all.zip"), opts)

    assert names_in(single) == ["job/a.txt"]
    assert names_in(combined) == ["job/a.txt", "other/b.txt"]


@pytest.mark.asyncio
async def test_all_zip_skips_colliding_entry_names(manager, tmp_path, caplog):
    await create_with_files(manager, "a", {"same.txt": "from a"})
    await create_with_files(manager, "b", {"same.txt": "from b", "other.txt": "b only"})

    zip_path = await manager.create_all_results_zip(str(tmp_path / "all.zip"), {"includeProcessName": False})

    assert names_in(zip_path) == ["other.txt", "same.txt"]
    with zipfile.ZipFile(zip_path) as zf:
        assert zf.read("same.txt") == b"from a"
    assert "Skipping same.txt" in caplog.text
