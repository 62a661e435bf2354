from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from loguru import logger

from stratus.constants import StatusCode
from stratus.core.exceptions import NotFoundError, ValidationError
from stratus.storage import sync
from stratus.storage.sync import Remote, StatusReport

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def write(fs, path: str, contents: str | bytes) -> None:
    data = contents.encode() if isinstance(contents, str) else contents
    fs.pipe_file(path, data)


@pytest.fixture
def messages() -> Iterator[list[str]]:
    """Messages logged by stratus while the test runs."""
    captured: list[str] = []
    logger.enable("stratus")
    handler = logger.add(lambda m: captured.append(m.record["message"]), level="DEBUG")
    yield captured
    logger.remove(handler)
    logger.disable("stratus")


class TestRemote:
    def test_join_strips_slashes(self):
        remote = Remote("s3://bucket/", {"key": "k"})
        assert remote.join("/data/", "out").url == "s3://bucket/data/out"

    def test_join_keeps_options(self):
        remote = Remote("gs://bucket", {"token": "t"})
        assert remote.join("data").options == {"token": "t"}

    def test_str_is_url(self):
        assert str(Remote("az://container")) == "az://container"


class TestIncludePatterns:
    @pytest.mark.parametrize("pattern", ["../x", "/x", "a/../../x", ".."])
    def test_rejects_escaping_patterns(self, pattern: str):
        with pytest.raises(ValidationError):
            sync.normalize_include(pattern)

    def test_empty_means_everything(self):
        assert sync.normalize_include("") == "."

    def test_normalizes(self):
        assert sync.normalize_include("./out/") == "out"

    def test_matches_path_and_descendants(self):
        assert sync.is_included("out", "out")
        assert sync.is_included("out/a/b.txt", "out")
        assert not sync.is_included("output.txt", "out")

    def test_glob(self):
        assert sync.is_included("results/model.pt", "results/*.pt")
        assert not sync.is_included("results/model.ckpt", "results/*.pt")


class TestTransfer:
    async def test_rejects_bad_pattern_before_resolving(self):
        with patch.object(sync, "resolve") as resolve:
            with pytest.raises(ValidationError):
                await sync.transfer("memory://src", "memory://dst", "../x")
            with pytest.raises(ValidationError):
                await sync.transfer("memory://src", "memory://dst", "/x")
            resolve.assert_not_called()

    async def test_copies_everything(self, memory_fs):
        write(memory_fs, "/src/a.txt", "a")
        write(memory_fs, "/src/nested/b.txt", "bb")

        stats = await sync.transfer("memory://src", "memory://dst")

        assert stats.total_files == 2
        assert stats.total_bytes == 3
        assert memory_fs.cat_file("/dst/a.txt") == b"a"
        assert memory_fs.cat_file("/dst/nested/b.txt") == b"bb"

    async def test_copies_only_included_subtree(self, memory_fs):
        write(memory_fs, "/src/in.txt", "in")
        write(memory_fs, "/src/out/result.txt", "result")

        await sync.transfer("memory://src", "memory://dst", "out")

        assert memory_fs.exists("/dst/out/result.txt")
        assert not memory_fs.exists("/dst/in.txt")

    async def test_overwrites_destination(self, memory_fs):
        write(memory_fs, "/src/a.txt", "new")
        write(memory_fs, "/dst/a.txt", "old contents")

        await sync.transfer("memory://src", "memory://dst")

        assert memory_fs.cat_file("/dst/a.txt") == b"new"

    async def test_local_to_remote(self, memory_fs, tmp_path: Path):
        (tmp_path / "data.csv").write_text("x,y\n")

        await sync.transfer(str(tmp_path), Remote("memory://bucket").join("data"))

        assert memory_fs.cat_file("/bucket/data/data.csv") == b"x,y\n"

    async def test_remote_to_local(self, memory_fs, tmp_path: Path):
        write(memory_fs, "/bucket/data/out/r.txt", "done")

        await sync.transfer(Remote("memory://bucket/data"), str(tmp_path), "out")

        assert (tmp_path / "out" / "r.txt").read_text() == "done"

    async def test_missing_source(self, memory_fs):
        with pytest.raises(NotFoundError):
            await sync.transfer("memory://missing", "memory://dst")

    async def test_logs_size_and_throughput(self, memory_fs, messages):
        write(memory_fs, "/src/a.txt", "a")
        write(memory_fs, "/src/nested/b.txt", "bb")
        copy = sync._copy

        def slow_copy(*args):
            time.sleep(0.05)
            copy(*args)

        with patch.object(sync, "_copy", slow_copy):
            await sync.transfer("memory://src", "memory://dst", interval=0.001)

        assert "Transferring 3 bytes (2 files)..." in messages
        throughput = [m for m in messages if m.startswith("Transferred ")]
        assert throughput
        assert all("files" in m and m.endswith("/s") for m in throughput)


class TestProgress:
    async def test_reports_until_body_finishes(self, messages):
        stats = sync.TransferStats(total_bytes=10, total_files=1)

        async with sync.progress(stats, logger.bind(component="test"), interval=0.001):
            await asyncio.sleep(0.02)
            stats.add_bytes(10)
            stats.add_file()
            await asyncio.sleep(0.02)
        reported = len(messages)
        await asyncio.sleep(0.02)

        assert reported >= 2
        assert len(messages) == reported
        assert messages[-1].startswith("Transferred 10 bytes / 10 bytes, 1/1 files")


class TestDelete:
    async def test_removes_files_and_directories(self, memory_fs):
        write(memory_fs, "/bucket/data/a.txt", "a")
        write(memory_fs, "/bucket/reports/status-1", "{}")

        await sync.delete("memory://bucket")

        assert memory_fs.find("/bucket") == []

    async def test_missing_is_not_found(self, memory_fs):
        with pytest.raises(NotFoundError):
            await sync.delete("memory://nothing-here")

    async def test_unreachable_host_is_not_found(self):
        with patch.object(sync, "resolve", side_effect=OSError("Name or service not known")):
            with pytest.raises(NotFoundError):
                await sync.delete(Remote("s3://gone"))

    async def test_other_errors_propagate(self):
        with patch.object(sync, "resolve", side_effect=PermissionError("denied")):
            with pytest.raises(PermissionError):
                await sync.delete(Remote("s3://locked"))


class TestReports:
    async def test_filters_by_prefix_in_name_order(self, memory_fs):
        write(memory_fs, "/bucket/reports/task-b", "second")
        write(memory_fs, "/bucket/reports/task-a", "first")
        write(memory_fs, "/bucket/reports/status-a", "{}")
        write(memory_fs, "/bucket/reports/tasks-x", "other")

        assert await sync.reports("memory://bucket", "task") == ["first", "second"]
        assert await sync.logs("memory://bucket") == ["first", "second"]

    async def test_missing_directory_is_empty(self, memory_fs):
        assert await sync.reports("memory://empty", "task") == []


class TestStatusReport:
    def test_parses_integer_code(self):
        assert StatusReport.parse("status-1", '{"code": 0}').code == "0"

    def test_missing_fields_are_empty(self):
        assert StatusReport.parse("status-1", "{}") == StatusReport()

    def test_malformed(self):
        with pytest.raises(ValidationError):
            StatusReport.parse("status-1", "not json")

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            StatusReport.parse("status-1", "[1, 2]")


class TestStatus:
    @pytest.fixture
    def remote(self, memory_fs) -> Remote:
        reports = {
            "status-1": {"result": "exit", "status": "done", "code": "0"},
            "status-2": {"result": "exit", "status": "done", "code": "1"},
            "status-3": {"result": "timeout", "status": "", "code": ""},
        }
        for name, report in reports.items():
            write(memory_fs, f"/bucket/reports/{name}", json.dumps(report))
        return Remote("memory://bucket")

    async def test_aggregates_onto_baseline(self, remote: Remote):
        result = await sync.status(remote, {StatusCode.ACTIVE: 1})

        assert result == {StatusCode.ACTIVE: 1, StatusCode.SUCCEEDED: 1, StatusCode.FAILED: 2}

    async def test_without_seen_counts_again(self, remote: Remote):
        baseline = await sync.status(remote, {})
        baseline = await sync.status(remote, baseline)

        assert baseline[StatusCode.SUCCEEDED] == 2
        assert baseline[StatusCode.FAILED] == 4

    async def test_seen_counts_each_report_once(self, remote: Remote):
        seen: set[str] = set()
        baseline = await sync.status(remote, {}, seen)
        baseline = await sync.status(remote, baseline, seen)

        assert baseline == {StatusCode.SUCCEEDED: 1, StatusCode.FAILED: 2}
        assert seen == {"status-1", "status-2", "status-3"}
