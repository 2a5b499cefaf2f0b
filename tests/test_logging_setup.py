import logging

import pytest

from carememo.config import LoggingSettings
from carememo.services.logging_setup import configure_logging


@pytest.fixture
def restore_handlers():
    loggers = [logging.getLogger(name) for name in ("", "uvicorn", "uvicorn.error", "uvicorn.access")]
    yield
    for logger in loggers:
        for handler in list(logger.handlers):
            if handler.name in ("carememo_file", "carememo_stream"):
                logger.removeHandler(handler)
                handler.close()


def _carememo_handlers(logger):
    return {
        handler.name: handler
        for handler in logger.handlers
        if handler.name and handler.name.startswith("carememo_")
    }


def test_levels_and_rotation_follow_settings(tmp_path, restore_handlers):
    settings = LoggingSettings(
        console_level="WARNING", file_level="INFO", max_bytes=1024, backup_count=1
    )
    log_path = configure_logging(str(tmp_path / "logs"), settings)

    handlers = _carememo_handlers(logging.getLogger())
    assert handlers["carememo_stream"].level == logging.WARNING
    assert handlers["carememo_file"].level == logging.INFO
    assert handlers["carememo_file"].maxBytes == 1024
    assert handlers["carememo_file"].backupCount == 1
    assert log_path.startswith(str(tmp_path / "logs"))

    logging.getLogger("carememo.test").debug("hidden detail")
    logging.getLogger("carememo.test").info("visible event")
    handlers["carememo_file"].flush()
    with open(log_path, encoding="utf-8") as f:
        text = f.read()
    assert "[INFO] [carememo.test] visible event" in text
    assert "hidden detail" not in text


def test_reconfiguring_keeps_foreign_handlers(tmp_path, restore_handlers):
    foreign = logging.NullHandler()
    root = logging.getLogger()
    root.addHandler(foreign)
    try:
        configure_logging(str(tmp_path / "a"))
        configure_logging(str(tmp_path / "b"))

        assert foreign in root.handlers
        assert sorted(_carememo_handlers(root)) == ["carememo_file", "carememo_stream"]
        assert len([h for h in root.handlers if h.name == "carememo_file"]) == 1
        assert logging.getLogger("watchdog").level == logging.WARNING
        assert logging.getLogger("uvicorn").propagate is False
    finally:
        root.removeHandler(foreign)
