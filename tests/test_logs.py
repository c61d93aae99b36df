from __future__ import annotations

import logging

import allure
import pytest

from ralph_agent.logs import (
    JobContextFilter,
    bind_job,
    clear_job_context,
    configure_logging,
    current_job_id,
)

pytestmark = [
    allure.epic("Agent Lifecycle"),
    allure.feature("Logging"),
]


def _record() -> logging.LogRecord:
    return logging.LogRecord("ralph_agent.test", logging.INFO, __file__, 1, "msg", None, None)


def test_filter_stamps_bound_job_id() -> None:
    bind_job(12)
    try:
        record = _record()
        assert JobContextFilter().filter(record) is True
        assert record.job_id == "12"
        assert current_job_id() == 12
    finally:
        clear_job_context()


def test_filter_uses_placeholder_without_job() -> None:
    clear_job_context()
    record = _record()

    JobContextFilter().filter(record)

    assert record.job_id == "-"


def test_configure_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        configure_logging("LOUD")
