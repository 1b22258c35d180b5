"""Structured logging for SceneGen.

All loggers live under the "scenegen" namespace so they can be controlled
with a single root level.  Every record carries the id of the scene run it
belongs to (``-`` outside a run), so interleaved concurrent jobs can be told
apart in one log stream.
"""
from __future__ import annotations

import logging
import logging.handlers
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator, Optional

_ROOT = "scenegen"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_NO_RUN = "-"

_run_id: ContextVar[str] = ContextVar("scenegen_run_id", default=_NO_RUN)


def current_run_id() -> str:
    return _run_id.get()


@contextmanager
def run_context(run_id: str) -> Iterator[str]:
    """Tag every record logged inside the block with ``run_id``.

    The id follows the context into tasks and ``asyncio.to_thread`` workers
    started within the block.
    """
    token = _run_id.set(run_id)
    try:
        yield run_id
    finally:
        _run_id.reset(token)


class RunIdFilter(logging.Filter):
    """Attach ``record.run_id`` for the ``%(run_id)s`` format field."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _run_id.get()
        return True


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure the scenegen root logger.

    Args:
        level: Log level string ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL").
        log_file: Optional path to a rotating file log.
        max_bytes: Max size before rotation (default 10 MB).
        backup_count: Number of backup files to keep.

    Raises:
        ValueError: If level is not a valid log level string.
    """
    upper = level.upper()
    if upper not in _VALID_LEVELS:
        raise ValueError(f"Invalid log level: {level!r}. Must be one of {_VALID_LEVELS}")

    numeric = getattr(logging, upper)
    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(run_id)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger(_ROOT)
    root.setLevel(numeric)

    # Remove existing handlers to avoid duplication on repeated calls
    root.handlers.clear()
    run_filter = RunIdFilter()

    console = logging.StreamHandler()
    console.setLevel(numeric)
    console.setFormatter(fmt)
    console.addFilter(run_filter)
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric)
        file_handler.setFormatter(fmt)
        file_handler.addFilter(run_filter)
        root.addHandler(file_handler)

    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the scenegen namespace.

    Args:
        name: Sub-namespace, e.g. "masks.rasterizer" → "scenegen.masks.rasterizer".
              If the name already starts with "scenegen", it is used as-is.
    """
    if name.startswith(_ROOT):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")
