"""
Logging setup for the relay service: console output, an optional daily-rotated
log file, and quieter third-party loggers.
"""
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Loggers that are chatty at INFO
NOISY_LOGGERS = ("urllib3", "requests", "yt_dlp", "asyncio")


def setup_logging(level: Union[int, str] = logging.INFO, log_dir: Optional[Union[str, Path]] = None):
    """
    Configure the root logger.

    Args:
        level: Root level, as an int or a name like "DEBUG"
        log_dir: When given, also write audio_relay.log there, rotated at midnight
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO

    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_path / "audio_relay.log",
            when="midnight",
            interval=1,
            backupCount=7,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
