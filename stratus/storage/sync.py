"""Remote storage synchronization and report polling.

Every provider keeps its task data in one remote root laid out as::

    <remote>/data/       user input and output directories
    <remote>/reports/    status-* and task-* records written by workers

Endpoints are local paths, fsspec URLs, or ``Remote`` values carrying
storage options (credentials, regions) next to the URL. Blocking
filesystem calls run on worker threads.

Example:
    remote = Remote("s3://stratus-train-1a2b3c4d", {"key": ..., "secret": ...})
    await transfer("./workdir", remote.join("data"))
    status = await status(remote, {StatusCode.ACTIVE: 2})
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import posixpath
import socket
import threading
import time
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any

from fsspec.core import url_to_fs
from loguru import logger
from rich.filesize import decimal

from stratus.constants import (
    LOG_REPORT_PREFIX,
    PROGRESS_INTERVAL,
    REPORTS_DIR,
    STATUS_REPORT_PREFIX,
    StatusCode,
)
from stratus.core.exceptions import NotFoundError, ValidationError

if TYPE_CHECKING:
    from fsspec import AbstractFileSystem
    from loguru import Logger

    from stratus.task.model import Status

_log = logger.bind(component="storage")

_CHUNK_SIZE = 4 * 1024 * 1024
_UNREACHABLE_MARKERS = (
    "no such host",
    "name or service not known",
    "nodename nor servname",
    "could not connect to the endpoint",
)


# =============================================================================
# Endpoints
# =============================================================================


@dataclass(frozen=True)
class Remote:
    """Remote root: an fsspec URL plus the storage options needed to open it."""

    url: str
    options: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def join(self, *parts: str) -> Remote:
        segments = [p.strip("/") for p in parts if p.strip("/")]
        url = "/".join([self.url.rstrip("/"), *segments])
        return Remote(url, self.options)

    def __str__(self) -> str:
        return self.url


type Endpoint = str | Remote


def resolve(endpoint: Endpoint) -> tuple[AbstractFileSystem, str]:
    """Open the filesystem behind an endpoint and return it with the root path."""
    if isinstance(endpoint, Remote):
        return url_to_fs(endpoint.url, **dict(endpoint.options))
    return url_to_fs(endpoint)


# =============================================================================
# Transfer
# =============================================================================


def normalize_include(include: str) -> str:
    """Validate an include pattern and return its normalized form.

    Raises:
        ValidationError: If the pattern is absolute or escapes the root.
    """
    normalized = posixpath.normpath(include or ".")
    if normalized.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise ValidationError(f"include pattern {include!r} must be relative to the transfer root")
    return normalized


def is_included(relative: str, include: str) -> bool:
    """Check whether a root-relative path is the include target or lies below it."""
    if include == ".":
        return True
    return fnmatchcase(relative, include) or fnmatchcase(relative, f"{include}/*")


@dataclass
class TransferStats:
    """Byte and file counters shared between the copy thread and the progress logger."""

    total_bytes: int = 0
    total_files: int = 0
    bytes: int = 0
    files: int = 0
    started: float = field(default_factory=time.monotonic)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_bytes(self, n: int) -> None:
        with self._lock:
            self.bytes += n

    def add_file(self) -> None:
        with self._lock:
            self.files += 1

    def summary(self) -> str:
        elapsed = max(time.monotonic() - self.started, 1e-6)
        return (
            f"{decimal(self.bytes)} / {decimal(self.total_bytes)}, "
            f"{self.files}/{self.total_files} files, "
            f"{decimal(int(self.bytes / elapsed))}/s"
        )


@contextlib.asynccontextmanager
async def progress(
    stats: TransferStats, log: Logger, interval: float = PROGRESS_INTERVAL
) -> AsyncIterator[TransferStats]:
    """Log transfer throughput every ``interval`` seconds while the body runs."""

    async def _report() -> None:
        while True:
            await asyncio.sleep(interval)
            log.info("Transferred {summary}", summary=stats.summary())

    reporter = asyncio.create_task(_report())
    try:
        yield stats
    finally:
        reporter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reporter


def _select(fs: AbstractFileSystem, root: str, include: str) -> dict[str, int]:
    root = root.rstrip("/")
    found = fs.find(root, detail=True)
    if not found and not fs.exists(root):
        raise NotFoundError(f"{root} not found")

    selected: dict[str, int] = {}
    for path, info in found.items():
        relative = posixpath.relpath(path, root) if root else path
        if is_included(relative, include):
            selected[relative] = int(info.get("size") or 0)
    return selected


def _copy(
    source: AbstractFileSystem,
    source_root: str,
    destination: AbstractFileSystem,
    destination_root: str,
    files: Iterable[str],
    stats: TransferStats,
) -> None:
    source_root = source_root.rstrip("/")
    destination_root = destination_root.rstrip("/")
    for relative in files:
        target = f"{destination_root}/{relative}"
        destination.makedirs(posixpath.dirname(target), exist_ok=True)
        with source.open(f"{source_root}/{relative}", "rb") as reader, destination.open(target, "wb") as writer:
            while chunk := reader.read(_CHUNK_SIZE):
                writer.write(chunk)
                stats.add_bytes(len(chunk))
        stats.add_file()


async def transfer(
    source: Endpoint,
    destination: Endpoint,
    include: str = ".",
    *,
    log: Logger | None = None,
    interval: float = PROGRESS_INTERVAL,
) -> TransferStats:
    """Copy the ``include`` subtree of ``source`` into ``destination``.

    Existing destination files are overwritten; files outside the include
    pattern are left alone on both sides.

    Args:
        source: Endpoint to read from.
        destination: Endpoint to write to.
        include: Root-relative path or glob to copy. "." copies everything.
        log: Logger for the size summary and throughput lines.
        interval: Seconds between throughput lines.

    Returns:
        Final transfer counters.

    Raises:
        ValidationError: If ``include`` is absolute or escapes the root.
            Raised before either endpoint is opened.
        NotFoundError: If the source root does not exist.
    """
    log = log or _log
    include = normalize_include(include)

    source_fs, source_root = resolve(source)
    destination_fs, destination_root = resolve(destination)

    files = await asyncio.to_thread(_select, source_fs, source_root, include)
    stats = TransferStats(total_bytes=sum(files.values()), total_files=len(files))
    log.info(
        "Transferring {size} ({count} files)...",
        size=decimal(stats.total_bytes),
        count=stats.total_files,
    )

    async with progress(stats, log, interval):
        await asyncio.to_thread(
            _copy, source_fs, source_root, destination_fs, destination_root, sorted(files), stats
        )

    log.debug("Transfer finished: {summary}", summary=stats.summary())
    return stats


# =============================================================================
# Delete
# =============================================================================


def _is_unreachable(error: BaseException) -> bool:
    if isinstance(error, socket.gaierror):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _UNREACHABLE_MARKERS)


def _purge(fs: AbstractFileSystem, root: str) -> None:
    root = root.rstrip("/")
    entries = fs.find(root, withdirs=True, detail=True)
    if not entries and not fs.exists(root):
        raise FileNotFoundError(root)

    files = [path for path, info in entries.items() if info.get("type") != "directory"]
    if files:
        fs.rm(files)

    directories = [path for path, info in entries.items() if info.get("type") == "directory"]
    for directory in sorted(directories, key=lambda p: p.count("/"), reverse=True):
        with contextlib.suppress(FileNotFoundError):
            fs.rmdir(directory)


async def delete(destination: Endpoint) -> None:
    """Delete every object below ``destination`` and prune empty directories.

    Raises:
        NotFoundError: If the destination does not exist or its host is
            unreachable. Idempotent callers treat this as success.
    """
    try:
        fs, root = resolve(destination)
        await asyncio.to_thread(_purge, fs, root)
    except FileNotFoundError as e:
        raise NotFoundError(f"{destination} not found") from e
    except Exception as e:
        if _is_unreachable(e):
            raise NotFoundError(f"{destination} unreachable: {e}") from e
        raise


# =============================================================================
# Reports
# =============================================================================


def _read_reports(fs: AbstractFileSystem, root: str, prefix: str) -> list[tuple[str, str]]:
    directory = root.rstrip("/") + REPORTS_DIR
    try:
        entries = fs.ls(directory, detail=True)
    except FileNotFoundError:
        return []

    reports: list[tuple[str, str]] = []
    for entry in sorted(entries, key=lambda e: e["name"]):
        if entry.get("type") == "directory":
            continue
        name = posixpath.basename(entry["name"].rstrip("/"))
        if not name.startswith(f"{prefix}-"):
            continue
        reports.append((name, fs.cat_file(entry["name"]).decode()))
    return reports


async def named_reports(remote: Endpoint, prefix: str) -> list[tuple[str, str]]:
    """Return ``(name, contents)`` of every report whose name starts with ``prefix-``."""
    fs, root = resolve(remote)
    return await asyncio.to_thread(_read_reports, fs, root, prefix)


async def reports(remote: Endpoint, prefix: str) -> list[str]:
    """Return the contents of every report whose name starts with ``prefix-``."""
    return [contents for _, contents in await named_reports(remote, prefix)]


async def logs(remote: Endpoint) -> list[str]:
    return await reports(remote, LOG_REPORT_PREFIX)


@dataclass(frozen=True, slots=True)
class StatusReport:
    """Terminal record a worker writes when its script exits or times out."""

    result: str = ""
    status: str = ""
    code: str = ""

    @classmethod
    def parse(cls, name: str, contents: str) -> StatusReport:
        try:
            data = json.loads(contents)
        except json.JSONDecodeError as e:
            raise ValidationError(f"malformed status report {name}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"malformed status report {name}: expected an object")
        fields = {key: data.get(key) for key in ("result", "status", "code")}
        return cls(**{key: "" if value is None else str(value) for key, value in fields.items()})


async def status(remote: Endpoint, baseline: Status, seen: set[str] | None = None) -> Status:
    """Fold worker status reports into ``baseline`` and return it.

    A report with a non-empty code counts as succeeded when the code is "0"
    and failed otherwise; a report without a code counts as failed when its
    result is "timeout".

    Without ``seen``, every call counts every report again, so feeding the
    returned status into the next poll counts unchanged reports twice. Pass
    the same ``seen`` set across polls to count each report once.
    """
    for name, contents in await named_reports(remote, STATUS_REPORT_PREFIX):
        if seen is not None:
            if name in seen:
                continue
            seen.add(name)

        report = StatusReport.parse(name, contents)
        if report.code:
            code = StatusCode.SUCCEEDED if report.code == "0" else StatusCode.FAILED
            baseline[code] = baseline.get(code, 0) + 1
        elif report.result == "timeout":
            baseline[StatusCode.FAILED] = baseline.get(StatusCode.FAILED, 0) + 1
    return baseline
