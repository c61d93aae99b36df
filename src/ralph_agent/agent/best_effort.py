"""Helper for fire-and-forget calls whose failure must not abort a job."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def run_ignoring_errors(
    label: str,
    fn: Callable[P, R],
    *args: P.args,
    **kwargs: P.kwargs,
) -> R | None:
    """Call ``fn`` and log-and-discard any exception it raises."""

    try:
        return fn(*args, **kwargs)
    except Exception as error:  # noqa: BLE001
        logger.warning("%s failed: %s", label, error)
        return None
