from __future__ import annotations

import logging

import pytest
import structlog

from pgfleet.config import OperatorConfig
from pgfleet.log import add_severity_level, configure_logging, get_logger


@pytest.fixture(autouse=True)
def _restore_structlog():
    root_level = logging.getLogger().level
    yield
    structlog.reset_defaults()
    logging.getLogger().setLevel(root_level)


def test_add_severity_level_with_level_field_adds_uppercase_severity() -> None:
    event = add_severity_level(None, "info", {"event": "x", "level": "warning"})

    assert event["severity"] == "WARNING"


def test_add_severity_level_without_level_field_leaves_event_untouched() -> None:
    assert add_severity_level(None, "info", {"event": "x"}) == {"event": "x"}


def test_configure_logging_with_json_format_renders_json_lines() -> None:
    configure_logging(OperatorConfig(log_format="json", log_level="DEBUG"))

    processors = structlog.get_config()["processors"]

    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    assert logging.getLogger("kubernetes").level == logging.WARNING


def test_configure_logging_with_console_format_renders_for_humans() -> None:
    configure_logging(OperatorConfig(log_format="console"))

    assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)


def test_get_logger_with_module_name_binds_key_values() -> None:
    with structlog.testing.capture_logs() as logs:
        get_logger("pgfleet.test").bind(backup="nightly").info("backup_phase_updated", phase="running")

    assert logs == [{"backup": "nightly", "phase": "running", "event": "backup_phase_updated", "log_level": "info"}]
