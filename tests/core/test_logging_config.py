"""
Unit Tests for structured logging
"""

import json
import logging

import pytest

from execution_engine.core.logging_config import (
    JSONFormatter,
    StandardFormatter,
    get_cycle_id,
    set_cycle_id,
    set_execution_id,
    setup_logging,
)


def make_log_record(message="Payment done", **extra):
    record = logging.LogRecord("execution_engine.core.driver", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def reset_context():
    yield
    set_cycle_id(None)
    set_execution_id(None)


@pytest.mark.unit
def test_json_formatter_includes_context():
    set_cycle_id("abc123")
    set_execution_id(42)

    data = json.loads(JSONFormatter().format(make_log_record(project_id=7)))

    assert data["level"] == "INFO"
    assert data["logger"] == "execution_engine.core.driver"
    assert data["message"] == "Payment done"
    assert data["cycle_id"] == "abc123"
    assert data["execution_id"] == 42
    assert data["context"] == {"project_id": 7}
    assert data["timestamp"].endswith("Z")


@pytest.mark.unit
def test_json_formatter_without_context():
    data = json.loads(JSONFormatter().format(make_log_record()))

    assert "cycle_id" not in data
    assert "execution_id" not in data
    assert "context" not in data


@pytest.mark.unit
def test_standard_formatter_tags():
    set_cycle_id("c1")
    set_execution_id(3)

    line = StandardFormatter().format(make_log_record("Execution 3 executed"))

    assert "INFO" in line
    assert "Execution 3 executed" in line
    assert line.endswith("(cycle=c1, execution=3)")


@pytest.mark.unit
def test_cycle_id_accessor():
    set_cycle_id("xyz")
    assert get_cycle_id() == "xyz"


@pytest.mark.unit
def test_setup_logging_env_overrides(monkeypatch, tmp_path):
    log_file = tmp_path / "engine.log"
    monkeypatch.setenv("LOG_LEVEL", "warning")
    monkeypatch.setenv("JSON_LOGS", "true")
    monkeypatch.setenv("LOG_FILE", str(log_file))
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level

    try:
        setup_logging()

        assert root.level == logging.WARNING
        assert all(isinstance(h.formatter, JSONFormatter) for h in root.handlers)
        assert any(isinstance(h, logging.FileHandler) for h in root.handlers)
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
