import logging
from pathlib import Path

import pytest

from attractorscore.logging_utils import (
    LOG_DIR_ENV,
    configure_logging,
    get_log_dir,
    get_log_path,
    log_exception,
)


def test_log_dir_uses_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(LOG_DIR_ENV, str(tmp_path))
    assert get_log_dir() == tmp_path
    assert get_log_path() == tmp_path / "attractorscore.log"


def test_log_exception_appends_traceback(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(LOG_DIR_ENV, str(tmp_path))
    try:
        raise ValueError("boom")
    except ValueError as exc:
        path = log_exception("render", exc)
    assert path == tmp_path / "attractorscore.log"
    text = path.read_text(encoding="utf-8")
    assert "render failed: ValueError: boom" in text
    assert "Traceback" in text


def test_configure_logging_force_installs_file_handler(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv(LOG_DIR_ENV, str(tmp_path))
    configure_logging(force=True)
    logger = logging.getLogger("attractorscore")
    try:
        assert any(isinstance(handler, logging.FileHandler) for handler in logger.handlers)
        logging.getLogger("attractorscore.test").info("hello file")
        for handler in logger.handlers:
            handler.flush()
        assert "hello file" in (tmp_path / "attractorscore.log").read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
