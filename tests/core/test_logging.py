from __future__ import annotations

import json
import logging
import sys

from entitlements.core.logging import _ContainerFormatter, _JsonFormatter, setup_logging


def _record(level: int, msg: str = "hello", *, pathname: str = "test.py", lineno: int = 1):
    return logging.LogRecord(
        name="entitlements.test",
        level=level,
        pathname=pathname,
        lineno=lineno,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_setup_logging_sets_root_level() -> None:
    setup_logging("debug")
    assert logging.getLogger().level == logging.DEBUG

    setup_logging("warning")
    assert logging.getLogger().level == logging.WARNING


def test_setup_logging_defaults_to_info_for_unknown_level() -> None:
    setup_logging("nonexistent")
    assert logging.getLogger().level == logging.INFO


def test_setup_logging_quiets_third_party_loggers_at_debug() -> None:
    setup_logging("debug")
    assert logging.getLogger("uvicorn").level == logging.WARNING
    assert logging.getLogger("stripe").level == logging.WARNING


def test_setup_logging_selects_json_formatter() -> None:
    setup_logging("info", json_format=True)
    (handler,) = logging.getLogger().handlers
    assert isinstance(handler.formatter, _JsonFormatter)
    setup_logging("info")


def test_formatter_excludes_location_for_info() -> None:
    output = _ContainerFormatter().format(_record(logging.INFO))
    assert "hello" in output
    assert "[test.py:" not in output


def test_formatter_includes_location_for_warning() -> None:
    record = _record(logging.WARNING, "Access denied", pathname="resolver.py", lineno=42)
    output = _ContainerFormatter().format(record)
    assert "Access denied" in output
    assert "[resolver.py:42]" in output


def test_json_formatter_lifts_request_context() -> None:
    record = _record(logging.WARNING, "Access denied")
    record.request_id = "abc-123"  # type: ignore[attr-defined]
    record.user_id = "user-1"  # type: ignore[attr-defined]
    record.path = "/groups/x"  # type: ignore[attr-defined]

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["level"] == "WARNING"
    assert parsed["logger"] == "entitlements.test"
    assert parsed["message"] == "Access denied"
    assert parsed["request_id"] == "abc-123"
    assert parsed["user_id"] == "user-1"
    assert parsed["path"] == "/groups/x"


def test_json_formatter_drops_unset_context() -> None:
    record = _record(logging.INFO)
    record.request_id = "-"  # type: ignore[attr-defined]
    parsed = json.loads(_JsonFormatter().format(record))
    assert "request_id" not in parsed
    assert "user_id" not in parsed


def test_json_formatter_includes_exception_info() -> None:
    try:
        raise ValueError("provider exploded")
    except ValueError:
        record = _record(logging.ERROR, "Payment provider error")
        record.exc_info = sys.exc_info()
        output = _JsonFormatter().format(record)

    parsed = json.loads(output)
    assert "ValueError: provider exploded" in parsed["exception"]
