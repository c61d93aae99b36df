"""Logging setup with per-job context stamping."""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

LOG_FORMAT = "%(asctime)s %(levelname)s [job=%(job_id)s] %(name)s: %(message)s"

_current_job_id: ContextVar[int | None] = ContextVar("ralph_agent_job_id", default=None)


class JobContextFilter(logging.Filter):
    """Stamp ``job_id`` from the current job context onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        job_id = _current_job_id.get()
        record.job_id = "-" if job_id is None else str(job_id)
        return True


def bind_job(job_id: int) -> None:
    _current_job_id.set(job_id)


def clear_job_context() -> None:
    _current_job_id.set(None)


def current_job_id() -> int | None:
    return _current_job_id.get()


def configure_logging(level: str = "INFO") -> None:
    """Install one stderr handler on the root logger; safe to call twice."""

    root = logging.getLogger()
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level!r}")
    root.setLevel(numeric_level)

    if not any(getattr(handler, "_ralph_agent", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler._ralph_agent = True  # type: ignore[attr-defined]  # noqa: SLF001
        handler.addFilter(JobContextFilter())
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
