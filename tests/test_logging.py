"""Tests for the logging bootstrap."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Iterator

import pytest

from storyforge.utils import logging as logging_utils


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    level = root.level
    package_level = logging.getLogger("storyforge").level
    saved_path = logging_utils._LOG_PATH
    yield
    for handler in list(root.handlers):
        if isinstance(handler, logging.handlers.RotatingFileHandler) or type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
            handler.close()
    logging.captureWarnings(False)
    root.setLevel(level)
    logging.getLogger("storyforge").setLevel(package_level)
    logging_utils._LOG_PATH = saved_path


def test_setup_logging_writes_rotating_file(tmp_path: Path, restore_root_logger: None) -> None:
    path = logging_utils.setup_logging(log_dir=tmp_path / "logs", console=False, force=True)

    logging.getLogger("storyforge.test").info("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert path == tmp_path / "logs" / logging_utils.LOG_FILENAME
    assert logging_utils.get_log_path() == path
    assert "| INFO     | storyforge.test | hello from the test" in path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_idempotent_without_force(tmp_path: Path, restore_root_logger: None) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False, force=True)
    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert second == first
    assert not (tmp_path / "b").exists()


def test_log_dir_from_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logger: None
) -> None:
    monkeypatch.setenv("STORYFORGE_LOG_DIR", str(tmp_path / "env-logs"))

    path = logging_utils.setup_logging(console=False, force=True)

    assert path.parent == tmp_path / "env-logs"


def test_set_debug_logging_only_touches_package_logger(restore_root_logger: None) -> None:
    logging_utils.set_debug_logging(True)
    assert logging.getLogger("storyforge").level == logging.DEBUG

    logging_utils.set_debug_logging(False)
    assert logging.getLogger("storyforge").level == logging.NOTSET
