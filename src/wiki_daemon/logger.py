import json
import logging
import logging.handlers
import os
import sys
import threading

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Rotation for the optional log file of a long-running daemon.
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# Chatty at INFO: per-request lines, observer internals, job bookkeeping.
NOISY_LOGGERS = ("urllib3", "watchdog", "apscheduler")


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, msg.

    Records emitted off the main thread (the watchdog observer or a worker
    running blocking I/O) also carry a "thread" field, and exception info
    goes into "exc".
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.thread != threading.main_thread().ident:
            entry["thread"] = record.threadName
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_formatter(log_format: str, with_name: bool) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=DATE_FORMAT)
    if with_name:
        fmt = "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
    else:
        fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    return logging.Formatter(fmt, datefmt=DATE_FORMAT)


def setup_logging(
    debug: bool = False,
    log_file: str | None = None,
    log_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure logging for the daemon.

    Records always go to stderr.  With a log file they are also appended
    there (with logger names), rotating at 10 MB with three backups.

    Args:
        debug: Force DEBUG regardless of any configured level.
        log_file: Log file path; LOG_FILE is used when omitted.
        log_format: "text" (default) or "json".
        level: Level from the config file, used when LOG_LEVEL is unset.

    Environment variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR.  Default: INFO.
        LOG_FILE: Log file path.
    """
    if debug:
        log_level = logging.DEBUG
    else:
        name = (os.getenv("LOG_LEVEL") or level or "INFO").upper()
        log_level = getattr(logging, name, logging.INFO)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_make_formatter(log_format, with_name=False))
    handlers: list[logging.Handler] = [stderr_handler]

    path = log_file or os.getenv("LOG_FILE")
    if path:
        file_handler = logging.handlers.RotatingFileHandler(
            path,
            mode="a",
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(_make_formatter(log_format, with_name=True))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers)

    if log_level != logging.DEBUG:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)
