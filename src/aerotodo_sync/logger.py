"""Logging for the command line and the background sync loop.

``cli`` mode writes to stderr (plus an optional file).  ``daemon`` mode is
used by ``aerotodo-sync run``: the loop may run for weeks, so records go
to a size-rotated file and only warnings reach stderr.

The scheduler logs through ``cycle_logger()``; those records carry the
cycle number and calendar id, which both formatters render.
"""

import json
import logging
import logging.handlers
import os
import sys
from pathlib import Path

DEFAULT_LOG_FILE = "~/.aerotodo_sync/sync.log"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 1_000_000
LOG_BACKUPS = 3


class CycleContextFilter(logging.Filter):
    """Set ``record.context`` to ``"[cycle N calendar] "`` or ``""``."""

    def filter(self, record: logging.LogRecord) -> bool:
        cycle = getattr(record, "cycle", None)
        if cycle is None:
            record.context = ""
        else:
            calendar = getattr(record, "calendar", "?")
            record.context = f"[cycle {cycle} {calendar}] "
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, msg.

    ``cycle`` and ``calendar`` are added for records logged through
    ``cycle_logger()``, ``exc`` when exception info is attached.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in ("cycle", "calendar"):
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def cycle_logger(
    base: logging.Logger, cycle: int, calendar_id: str
) -> logging.LoggerAdapter:
    """Wrap *base* so every record names the sync cycle it belongs to."""
    return logging.LoggerAdapter(
        base, {"cycle": cycle, "calendar": calendar_id}
    )


def _formatter(log_format: str, with_name: bool) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=DATE_FORMAT)
    name = "%(name)s " if with_name else ""
    return logging.Formatter(
        f"[%(asctime)s] [%(levelname)s] {name}%(context)s%(message)s",
        datefmt=DATE_FORMAT,
    )


def _handler(
    handler: logging.Handler, log_format: str, with_name: bool
) -> logging.Handler:
    handler.setFormatter(_formatter(log_format, with_name))
    handler.addFilter(CycleContextFilter())
    return handler


def resolve_level(debug: bool = False, level: str | None = None) -> int:
    """``debug`` beats ``LOG_LEVEL``, which beats *level* (from YAML)."""
    if debug:
        return logging.DEBUG
    name = (os.getenv("LOG_LEVEL") or level or "INFO").upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    log_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure the root logger.

    Args:
        mode: "cli" for stderr output, "daemon" for the rotating log file
              used by the background sync loop.
        debug: Force DEBUG level.
        log_file: Log file path.  Optional in cli mode; in daemon mode
                  it overrides LOG_FILE and the default
                  ``~/.aerotodo_sync/sync.log``.
        log_format: "text" (default) or "json".
        level: Level name from the ``logging`` config section.

    Environment variables:
        LOG_LEVEL: Level name; overrides *level*.
        LOG_FILE: Daemon mode log file.
    """
    log_level = resolve_level(debug, level)
    handlers: list[logging.Handler] = []

    if mode == "daemon":
        path = Path(
            log_file or os.getenv("LOG_FILE") or DEFAULT_LOG_FILE
        ).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _handler(
                logging.handlers.RotatingFileHandler(
                    path,
                    maxBytes=MAX_LOG_BYTES,
                    backupCount=LOG_BACKUPS,
                    encoding="utf-8",
                ),
                log_format,
                with_name=True,
            )
        )
        console = _handler(
            logging.StreamHandler(sys.stderr), log_format, with_name=False
        )
        console.setLevel(logging.WARNING)
        handlers.append(console)
    else:
        handlers.append(
            _handler(
                logging.StreamHandler(sys.stderr), log_format, with_name=False
            )
        )
        if log_file:
            handlers.append(
                _handler(
                    logging.FileHandler(log_file, mode="a", encoding="utf-8"),
                    log_format,
                    with_name=True,
                )
            )

    logging.basicConfig(level=log_level, handlers=handlers)

    # Request URLs carry calendar ids; keep HTTP internals quiet unless DEBUG
    if log_level != logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)
