"""Tests for structured JSON logging"""
import json
import logging
import sys

import pytest

from smartforms.domain.enums import RuleTrigger
from smartforms.utils.logger import JsonFormatter, correlation_id_var, get_correlation_id, set_correlation_id


@pytest.fixture(autouse=True)
def reset_correlation_id():
    token = correlation_id_var.set(None)
    yield
    correlation_id_var.reset(token)


def make_record(message, **extra):
    record = logging.LogRecord("smartforms.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_payload_with_extra_fields():
    set_correlation_id("COR-1")
    payload = json.loads(JsonFormatter().format(
        make_record("Rule ran", rule_id="r1", trigger=RuleTrigger.ON_SUBMIT, unrelated="dropped")
    ))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "smartforms.test"
    assert payload["message"] == "Rule ran"
    assert payload["correlation_id"] == "COR-1"
    assert payload["rule_id"] == "r1"
    assert payload["trigger"] == "on_submit"
    assert "unrelated" not in payload
    assert payload["timestamp"].endswith("Z")


def test_no_correlation_id_by_default():
    assert get_correlation_id() is None
    payload = json.loads(JsonFormatter().format(make_record("plain")))
    assert "correlation_id" not in payload


def test_exception_is_rendered():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
    payload = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in payload["exception"]
