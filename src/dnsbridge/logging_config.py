import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def setup_logging(
    log_path: Path | None = None,
    foreground: bool = True,
    level: str = "INFO",
    max_bytes: int = 10 * 1024 * 1024,
) -> None:
    """Configure the root logger for the bridge process.

    Logs go to a rotating file when ``log_path`` is set and to stderr in
    foreground mode. With neither, stderr is used so nothing is lost.
    """
    handlers: list[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=3)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if foreground or not handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        handlers.append(stream_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, handlers=handlers, force=True)
