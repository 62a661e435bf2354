from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta

import fsspec
import pytest

from stratus.constants import Provider
from stratus.task.cloud import Cloud, Timeouts


@pytest.fixture
def memory_fs() -> Iterator[fsspec.AbstractFileSystem]:
    """Process-wide in-memory filesystem, emptied after each test."""
    fs = fsspec.filesystem("memory")
    fs.store.clear()
    fs.pseudo_dirs.clear()
    fs.pseudo_dirs.append("")
    yield fs
    fs.store.clear()
    fs.pseudo_dirs.clear()
    fs.pseudo_dirs.append("")


@pytest.fixture
def fast_timeouts() -> Timeouts:
    return Timeouts(
        create=timedelta(seconds=5),
        read=timedelta(seconds=5),
        update=timedelta(seconds=5),
        delete=timedelta(seconds=5),
    )


@pytest.fixture
def aws_cloud(fast_timeouts: Timeouts) -> Cloud:
    return Cloud(provider=Provider.AWS, region="us-west", timeouts=fast_timeouts)
