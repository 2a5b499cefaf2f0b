import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

from carememo.config import LoggingSettings

_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
_HANDLER_NAMES = ("carememo_file", "carememo_stream")

# Libraries that log every poll, chunk or connection at DEBUG.
QUIET_LOGGERS = ("watchdog", "urllib3", "faster_whisper", "multipart")


def _build_file_handler(log_path: str, settings: LoggingSettings) -> RotatingFileHandler:
    file_handler = RotatingFileHandler(
        log_path, maxBytes=settings.max_bytes, backupCount=settings.backup_count
    )
    file_handler.setFormatter(logging.Formatter(_FORMAT, "%Y-%m-%d %H:%M:%S"))
    file_handler.setLevel(settings.file_level)
    file_handler.name = "carememo_file"
    return file_handler


def _build_stream_handler(settings: LoggingSettings) -> logging.StreamHandler:
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(_FORMAT, "%H:%M:%S"))
    stream_handler.setLevel(settings.console_level)
    stream_handler.name = "carememo_stream"
    return stream_handler


def _replace_handlers(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    # Handlers installed by anyone else (pytest's caplog, an embedding host) stay.
    for handler in list(logger.handlers):
        if handler.name in _HANDLER_NAMES:
            logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        logger.addHandler(handler)


def configure_logging(
    logs_dir: Optional[str] = None, settings: Optional[LoggingSettings] = None
) -> str:
    """Send carememo, uvicorn and library logs to ``logs/server_<ts>.log`` and the console.

    The file handler records at ``settings.file_level`` and the console at
    ``settings.console_level``. Calling it again swaps in fresh handlers, so
    each ``create_app`` starts a new log file.
    """
    settings = settings or LoggingSettings()
    logs_dir = logs_dir or os.path.join(os.getcwd(), "logs")
    os.makedirs(logs_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_path = os.path.join(logs_dir, f"server_{timestamp}.log")

    file_handler = _build_file_handler(log_path, settings)
    stream_handler = _build_stream_handler(settings)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    _replace_handlers(root_logger, [file_handler, stream_handler])

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.setLevel(logging.INFO)
        _replace_handlers(uv_logger, [file_handler, stream_handler])
        uv_logger.propagate = False

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized: %s console=%s file=%s",
        log_path,
        settings.console_level,
        settings.file_level,
    )
    return log_path
