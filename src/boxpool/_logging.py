"""Logging setup for boxpool.

The library only ever attaches a NullHandler to the ``boxpool`` logger.
Entry points (the CLI, a service process) call ``configure_logging`` to get
output on stderr. ``BOXPOOL_LOG_LEVEL`` sets the library level at import.

CLI line format, with selected ``extra`` context appended:
    WARNING [2026-02-25 10:02:54] boxpool.allocator - Allocation failed, rolling back [instance_id=i-1 step=attach_volume]

Emission never blocks the event loop: records go through a bounded queue
(QueueHandler) and a listener thread writes them with click.echo(err=True).
Records that do not fit in the queue are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "boxpool"

# extra={...} keys shown on CLI lines, in this order
CONTEXT_KEYS: tuple[str, ...] = (
    "kind",
    "resource_id",
    "instance_id",
    "volume_id",
    "user_id",
    "snapshot_id",
    "host",
    "operation",
    "step",
    "status",
    "error",
)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Sized for a full scale-up batch logging at once
_QUEUE_CAPACITY = 4096


def _level_from_env(variable: str) -> int | None:
    """Numeric level named by ``variable`` (e.g. "DEBUG"), or None if unset/unknown."""
    name = os.environ.get(variable, "").strip().upper()
    return logging.getLevelNamesMapping().get(name) or None


_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())
if (_env_level := _level_from_env("BOXPOOL_LOG_LEVEL")) is not None:
    _library_logger.setLevel(_env_level)


class ContextFormatter(logging.Formatter):
    """Appends the CONTEXT_KEYS found on a record as ``[key=value ...]``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [f"{key}={getattr(record, key)}" for key in CONTEXT_KEYS if getattr(record, key, None) is not None]
        return f"{line} [{' '.join(pairs)}]" if pairs else line


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr; warnings and above in yellow.

    Only ever called from the queue listener thread.
    """

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ContextFormatter(fmt=_FMT, datefmt=_DATEFMT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            styled = click.style(self.format(record), **_style_for(record.levelno))
            click.echo(styled, err=True)
        except BlockingIOError:
            pass  # stderr is saturated; drop the line
        except Exception:  # noqa: BLE001
            self.handleError(record)


def _style_for(levelno: int) -> dict[str, object]:
    if levelno >= logging.ERROR:
        return {"fg": "red"}
    if levelno >= logging.WARNING:
        return {"fg": "yellow"}
    return {"dim": True}


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Non-blocking front half: enqueue or drop, never wait."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener formats the original record, extras included
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a boxpool module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Send boxpool log records to stderr. Safe to call more than once.

    Args:
        level: Library log level; overrides BOXPOOL_LOG_LEVEL.
        quiet: Errors only. Wins over ``level``.
    """
    if not any(isinstance(h, _QueuedStderrHandler) for h in _library_logger.handlers):
        _library_logger.addHandler(_QueuedStderrHandler())

    if quiet:
        _library_logger.setLevel(logging.ERROR)
    elif level is not None:
        _library_logger.setLevel(level)
