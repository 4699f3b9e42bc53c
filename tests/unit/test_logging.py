"""Tests for structured JSON logging."""

from __future__ import annotations

import json
import logging

import pytest

from task_market_service.logging import (
    ROOT_LOGGER_NAME,
    JSONFormatter,
    get_logger,
    setup_logging,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_root_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="task_market_service.tests",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_renders_json_with_extra():
    formatter = JSONFormatter("task-market")
    line = formatter.format(_record("Task settled", task_id="t-1", fee="5.00"))
    data = json.loads(line)
    assert data["level"] == "INFO"
    assert data["service"] == "task-market"
    assert data["message"] == "Task settled"
    assert data["timestamp"].endswith("Z")
    assert data["extra"] == {"task_id": "t-1", "fee": "5.00"}


def test_formatter_omits_empty_extra():
    data = json.loads(JSONFormatter("task-market").format(_record("plain")))
    assert "extra" not in data


def test_get_logger_nests_under_service_root():
    assert get_logger("task_market_service.services.ledger").name == (
        "task_market_service.services.ledger"
    )
    assert get_logger("uvicorn").name == "task_market_service.uvicorn"


def test_setup_logging_rejects_unknown_level():
    with pytest.raises(ValueError, match="Invalid log level"):
        setup_logging("LOUD", "task-market", None)


def test_setup_logging_writes_daily_file(tmp_path):
    log_dir = tmp_path / "logs"
    logger = setup_logging("info", "task-market", str(log_dir))

    get_logger("task_market_service.services.ledger").info(
        "Deposit recorded", extra={"user_id": "u-1"}
    )
    for handler in logger.handlers:
        handler.flush()

    files = list(log_dir.glob("*.log"))
    assert len(files) == 1
    entry = json.loads(files[0].read_text().strip().splitlines()[-1])
    assert entry["message"] == "Deposit recorded"
    assert entry["extra"] == {"user_id": "u-1"}
    assert logger.propagate is False
