"""Logging setup for devicecloud.

The library only ever logs to the ``devicecloud`` logger tree and attaches a
NullHandler to it; applications decide where records go.  Two knobs exist
for command-line use:

- ``DEVICECLOUD_LOG_LEVEL`` (e.g. ``DEBUG``) sets the level at import time
- ``configure_logging()`` installs a stderr handler for the ``dcloud`` CLI

Modules attach structured context through ``extra=``.  The CLI handler
renders the fields it knows about after the message, so a polling log line
reads:

    DEBUG [2026-10-18 10:02:54] devicecloud.state - Instance state changed instance=abc state=on previous=booting

Records are handed to a background thread through a bounded queue so a
burst of poll or channel logs never blocks the event loop; when the queue
is full, records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "devicecloud"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_level_name = os.environ.get("DEVICECLOUD_LOG_LEVEL", "").strip().upper()
_level_from_env = logging.getLevelNamesMapping().get(_level_name)
if _level_from_env:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_level_from_env)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Context keys rendered after the message, in this order
CONTEXT_FIELDS: tuple[str, ...] = (
    "instance",
    "kind",
    "endpoint",
    "state",
    "previous",
    "method",
    "path",
    "event",
    "error",
)

_QUEUE_CAPACITY = 4096


class ContextFormatter(logging.Formatter):
    """Formatter that appends known ``extra=`` fields as ``key=value`` pairs."""

    def __init__(self, fields: tuple[str, ...] = CONTEXT_FIELDS) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)
        self._fields = fields

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [f"{name}={getattr(record, name)}" for name in self._fields if getattr(record, name, None) is not None]
        return f"{line} {' '.join(pairs)}" if pairs else line


class _StderrHandler(logging.Handler):
    """Echo formatted records to stderr through click (dimmed on a TTY)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Enqueue records without blocking; a listener thread writes them out."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _StderrHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep the record (and its extra fields) as is
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a devicecloud module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Send devicecloud logs to stderr, for the CLI and scripts.

    Calling it again only adjusts the level; the stderr handler is
    installed once.

    Args:
        level: Level name or number; overrides DEVICECLOUD_LOG_LEVEL.
        quiet: Only show errors.  Wins over ``level``.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _QueuedStderrHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueuedStderrHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
