import unittest
from datetime import datetime

import pandas as pd

from services.exceptions import UploadValidationError
from services.supplementary import (
    SupplementaryData,
    parse_dataset,
    read_cycle_dates,
    sum_quantities,
)
from tests.test_helpers import create_mock_excel


class TestCycleDates(unittest.TestCase):

    def test_case_insensitive_headers_and_defaults(self):
        frame = pd.DataFrame({
            "dfu": ["D1", "D1", None],
            "PART CODE": ["A", 1002.0, "X"],
            "sos": [datetime(2026, 1, 5), None, None],
            "Eos": ["2027-01-01", None, None],
            "comment": ["phase in", None, None],
        })

        cycle = read_cycle_dates(frame)

        self.assertEqual(cycle["D1"]["A"], {"sos": "2026-01-05", "eos": "2027-01-01", "comments": "phase in"})
        self.assertEqual(cycle["D1"]["1002"], {"sos": "N/A", "eos": "N/A", "comments": ""})
        self.assertEqual(list(cycle), ["D1"])

    def test_requires_dfu_and_part_columns(self):
        with self.assertRaises(UploadValidationError):
            read_cycle_dates(pd.DataFrame({"SOS": ["x"]}))


class TestQuantities(unittest.TestCase):

    def test_sums_per_product(self):
        frame = pd.DataFrame({
            "Product Number": ["A", "A", "B", None],
            "Stock On Hand": [5, "7", "n/a", 3],
        })
        self.assertEqual(sum_quantities(frame, "Product Number", "Stock On Hand"), {"A": 12.0, "B": 0.0})

    def test_missing_quantity_column(self):
        frame = pd.DataFrame({"Product Number": ["A"]})
        with self.assertRaises(UploadValidationError):
            sum_quantities(frame, "Product Number", "Stock On Hand")


def test_parse_dataset_from_workbook():
    file = create_mock_excel({"Sheet": [
        ["Product Number", "In Transit"],
        ["A", 4],
        ["A", 6],
    ]})
    assert parse_dataset("transit", file) == {"A": 10.0}


def test_parse_dataset_rejects_unknown_name():
    try:
        parse_dataset("weather", None)
    except UploadValidationError as e:
        assert "weather" in e.message
    else:
        raise AssertionError("expected UploadValidationError")


def test_supplementary_round_trip():
    data = SupplementaryData(cycle={"D1": {"A": {"sos": "N/A", "eos": "N/A", "comments": ""}}})
    data.set_dataset("supply", {"A": 3.0})

    restored = SupplementaryData.from_dict(data.to_dict())

    assert restored.details_for("D1", "A") == {"sos": "N/A", "eos": "N/A", "comments": "", "openSupply": 3.0}
    assert restored.loaded == ["cycle", "supply"]
