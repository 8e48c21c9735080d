"""Tests for ID generation"""
import re

from smartforms.utils.idgen import (
    generate_approval_record_id, generate_correlation_id, generate_event_id, generate_id,
)


def test_generate_id():
    assert re.fullmatch(r"[0-9a-f]{12}", generate_id())
    assert re.fullmatch(r"APR-[0-9a-f]{12}", generate_approval_record_id())
    assert generate_event_id().startswith("EVT-")
    assert generate_id("X") != generate_id("X")


def test_correlation_id_format():
    assert re.fullmatch(r"COR-\d{14}-[0-9a-f]{8}", generate_correlation_id())
