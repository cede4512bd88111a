"""Log file wiring for the ``chatweave`` package logger."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from ..services.settings import Settings

__all__ = ["configure_logging", "reset_logging", "get_log_path", "PACKAGE_LOGGER"]

PACKAGE_LOGGER = "chatweave"
_DEFAULT_LOG_DIR = Path.home() / ".chatweave" / "logs"
_LOG_FILE_NAME = "chatweave.log"
_TRANSPORT_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai")
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_installed: list[logging.Handler] = []
_log_path: Path | None = None


def configure_logging(
    settings: Settings | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> Path:
    """Send ``chatweave`` records to a rotating file and return its path.

    ``settings.debug_logging`` selects DEBUG, which is also the level at which
    request payloads are written; otherwise INFO. The directory comes from
    ``log_dir``, then ``settings.log_dir``, then ``~/.chatweave/logs``.
    Handlers are attached to the package logger only, and calling this again
    replaces the ones installed by the previous call.
    """

    global _log_path
    debug = bool(settings and settings.debug_logging)
    level = logging.DEBUG if debug else logging.INFO
    target_dir = Path(log_dir or (settings.log_dir if settings else None) or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / _LOG_FILE_NAME

    reset_logging()
    formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
        _installed.append(handler)
    package_logger.setLevel(level)

    # Transport libraries log every request line at DEBUG.
    for name in _TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _log_path = path
    package_logger.debug("Logging to %s (debug=%s)", path, debug)
    return path


def reset_logging() -> None:
    """Detach and close any handlers installed by :func:`configure_logging`."""

    global _log_path
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    while _installed:
        handler = _installed.pop()
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
    _log_path = None


def get_log_path() -> Path | None:
    return _log_path
