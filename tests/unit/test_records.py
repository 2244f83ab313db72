from datetime import datetime

import pytest
import pytz

from services.records import (
    TRANSFER_HISTORY,
    append_history,
    audit_timestamp,
    format_quantity,
    safe_float,
    split_week_key,
    to_comparable_string,
    variant_value,
    week_key,
)


@pytest.mark.parametrize("value, expected", [
    (None, ""),
    (3.0, "3"),
    (3.5, "3.5"),
    (" A1 ", "A1"),
    (100, "100"),
])
def test_to_comparable_string(value, expected):
    assert to_comparable_string(value) == expected


@pytest.mark.parametrize("value, expected", [
    ("12.5", 12.5),
    ("", 0.0),
    ("abc", 0.0),
    (None, 0.0),
    (7, 7.0),
])
def test_safe_float_treats_non_numeric_as_zero(value, expected):
    assert safe_float(value) == expected


def test_variant_value_keeps_numeric_codes_numeric():
    assert variant_value("1234") == 1234
    assert variant_value("0123") == "0123"
    assert variant_value("B") == "B"


def test_week_key_split_keeps_dashes_in_location():
    key = week_key(3, "DC-NORTH")
    assert key == "3-DC-NORTH"
    assert split_week_key(key) == ("3", "DC-NORTH")


def test_append_history_adds_prefix_once():
    record = {}
    append_history(record, "[A → 5 @ now]")
    append_history(record, "[B → 2 @ later]")
    assert record[TRANSFER_HISTORY] == "PIPO [A → 5 @ now] [B → 2 @ later]"


def test_audit_timestamp_format():
    now = pytz.utc.localize(datetime(2026, 1, 5, 3, 4, 5))
    # Sydney is UTC+11 in January
    assert audit_timestamp("Australia/Sydney", now) == "05/01/2026, 14:04:05"


def test_format_quantity():
    assert format_quantity(5.0) == "5"
    assert format_quantity(2.5) == "2.5"
