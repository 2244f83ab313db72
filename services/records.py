"""
Column names and small value helpers shared by every part of the transfer core.

Records are plain dicts keyed by the spreadsheet column names, exactly as they
come out of the demand workbook. Any extra columns are carried along untouched.
"""
import copy
from datetime import datetime

import pytz

DFU = "DFU"
PRODUCT_NUMBER = "Product Number"
DEMAND = "weekly fcst"
DESCRIPTION = "PartDescription"
PLANT = "Production Plant"
LINE = "Production Line"
WEEK_NUMBER = "Week Number"
SOURCE_LOCATION = "Source Location"
CALENDAR_WEEK = "Calendar.week"
TRANSFER_HISTORY = "Transfer History"

REQUIRED_COLUMNS = [DFU, PRODUCT_NUMBER, DEMAND, WEEK_NUMBER, SOURCE_LOCATION]

HISTORY_PREFIX = "PIPO"
DEFAULT_DESCRIPTION = "Description not available"


def to_comparable_string(value):
    """Normalise a cell value for comparison: None -> '', 3.0 -> '3', strings trimmed."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def safe_float(value):
    """Demand as a float; blanks and non-numeric values count as zero."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value) if value != "" else 0.0
    except (TypeError, ValueError):
        return 0.0


def variant_value(code):
    """
    Value to write into the Product Number column.

    Uploaded sheets usually hold numeric part numbers, so a purely numeric code is
    written back as an int to keep the exported column consistent.
    """
    code = to_comparable_string(code)
    if code.isdigit() and str(int(code)) == code:
        return int(code)
    return code


def dfu_of(record):
    return to_comparable_string(record.get(DFU))


def variant_of(record):
    return to_comparable_string(record.get(PRODUCT_NUMBER))


def week_of(record):
    return to_comparable_string(record.get(WEEK_NUMBER))


def location_of(record):
    return to_comparable_string(record.get(SOURCE_LOCATION))


def week_key(week_number, source_location):
    return f"{to_comparable_string(week_number)}-{to_comparable_string(source_location)}"


def split_week_key(key):
    """
    Split a ``"<week>-<location>"`` key.

    Week numbers never contain a dash, so only the first dash separates the parts;
    locations such as ``"DC-NORTH"`` survive intact.
    """
    week, _, location = str(key).partition("-")
    return week.strip(), location.strip()


def merge_key(record):
    return variant_of(record), week_of(record), location_of(record)


def copy_records(records):
    return [copy.deepcopy(dict(r)) for r in records]


def total_demand(records):
    return sum(safe_float(r.get(DEMAND)) for r in records)


def audit_timestamp(tz_name="Australia/Sydney", now=None):
    """Timestamp used in Transfer History notes, e.g. ``19/10/2026, 14:05:09``."""
    tz = pytz.timezone(tz_name)
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = tz.localize(now)
    else:
        now = now.astimezone(tz)
    return now.strftime("%d/%m/%Y, %H:%M:%S")


def format_quantity(value):
    value = safe_float(value)
    return str(int(value)) if value.is_integer() else f"{value:g}"


def append_history(record, entry):
    """Append an audit entry to the record's Transfer History, adding the PIPO prefix once."""
    existing = record.get(TRANSFER_HISTORY) or ""
    if existing:
        record[TRANSFER_HISTORY] = f"{existing} {entry}"
    else:
        record[TRANSFER_HISTORY] = f"{HISTORY_PREFIX} {entry}"
