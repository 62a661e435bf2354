from __future__ import annotations

from pathlib import Path

import pytest
from loguru import logger

from stratus.logging import LogConfig, setup_logging, teardown_logging

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class TestSetupLogging:
    def test_file_handler_captures_library_logs(self, tmp_path: Path):
        path = tmp_path / "stratus.log"
        handlers = setup_logging(LogConfig(level="WARNING", file=str(path), console=False))
        try:
            assert len(handlers) == 1
            logger.bind(component="test").patch(
                lambda record: record.update(name="stratus.test")
            ).debug("provisioning {name}", name="train")
            logger.complete()
        finally:
            teardown_logging(handlers)

        assert "provisioning train" in path.read_text()

    def test_console_only(self):
        handlers = setup_logging(LogConfig())
        try:
            assert len(handlers) == 1
        finally:
            teardown_logging(handlers)

    def test_teardown_removes_handlers(self):
        handlers = setup_logging(LogConfig())
        teardown_logging(handlers)
        with pytest.raises(ValueError):
            logger.remove(handlers[0])
