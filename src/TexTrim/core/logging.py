"""Logging setup for TexTrim runs.

The console gets one short line per record; the rotating run log next to
the output tree also carries the timestamp and worker thread, which is
what you need to follow a converter failure across retries.
"""

import logging
import logging.handlers
import os
import threading

ROOT_LOGGER = "texture_optimizer"
LOG_FILE_NAME = "textrim.log"

CONSOLE_FORMAT = "%(levelname)-7s %(component)s: %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(component)s [T%(thread)d]: %(message)s"

# 10 MB max per log file, keep 3 rotated backups
_LOG_MAX_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 3
_setup_lock = threading.Lock()

logger = logging.getLogger(ROOT_LOGGER)


class ComponentFormatter(logging.Formatter):
    """Show ``texture_optimizer.vfs`` as ``vfs``; foreign loggers keep their name."""

    def format(self, record):
        prefix = ROOT_LOGGER + "."
        record.component = (
            record.name[len(prefix):] if record.name.startswith(prefix) else record.name
        )
        return super().format(record)


def default_log_path(output_dir: str) -> str:
    return os.path.join(output_dir, LOG_FILE_NAME)


def _file_handler(log_file: str) -> logging.Handler:
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(ComponentFormatter(FILE_FORMAT))
    return handler


def _resolve_level(level: str) -> int:
    numeric = getattr(logging, str(level).upper(), None)
    if isinstance(numeric, int):
        return numeric
    logger.warning("Invalid log level '%s', defaulting to INFO", level)
    return logging.INFO


def setup_logging(level: str = "INFO", log_file: str = None, force: bool = False):
    """Configure console and run-log output.

    With no root handlers (or ``force``) the root logger is configured.
    Otherwise TexTrim is running inside a host application: only the
    ``texture_optimizer`` hierarchy is touched and just the run log is
    added to it, once per file.
    """
    with _setup_lock:
        numeric_level = _resolve_level(level)
        root = logging.getLogger()
        if force or not root.handlers:
            console = logging.StreamHandler()
            console.setFormatter(ComponentFormatter(CONSOLE_FORMAT))
            handlers = [console]
            if log_file:
                handlers.append(_file_handler(log_file))
            logging.basicConfig(level=numeric_level, handlers=handlers, force=force)
            logger.debug("Logging initialized at %s (%d handlers)",
                         logging.getLevelName(numeric_level), len(handlers))
            return

        logger.setLevel(numeric_level)
        if not log_file:
            return
        target = os.path.abspath(log_file)
        if any(getattr(h, "baseFilename", None) == target for h in logger.handlers):
            return
        logger.addHandler(_file_handler(log_file))
        logger.info("Writing run log to %s", target)
