"""
Optional per-variant datasets uploaded next to the demand workbook.

* ``cycle`` - variant lifecycle dates: DFU, Part Code, SOS, EOS, Comments.
* ``stock`` / ``supply`` / ``transit`` - quantities summed per product code.

None of these change demand; they only enrich the variant summaries shown to users.
"""
import logging
from datetime import date, datetime

import pandas as pd

from services.exceptions import UploadValidationError
from services.records import to_comparable_string


# Configure logging
logger = logging.getLogger(__name__)

CYCLE = "cycle"
QUANTITY_DATASETS = {
    "stock": "stockOnHand",
    "supply": "openSupply",
    "transit": "inTransit",
}
DATASETS = [CYCLE] + list(QUANTITY_DATASETS)

NOT_AVAILABLE = "N/A"

DEFAULT_QUANTITY_COLUMNS = {
    "stock": {"product_column": "Product Number", "quantity_column": "Stock On Hand"},
    "supply": {"product_column": "Product Number", "quantity_column": "Open Supply"},
    "transit": {"product_column": "Product Number", "quantity_column": "In Transit"},
}


def _find_column(columns, *candidates, contains=None):
    """Case-insensitive header lookup; falls back to a substring match when ``contains`` is given."""
    upper = {str(c).strip().upper(): c for c in columns}
    for candidate in candidates:
        if candidate.upper() in upper:
            return upper[candidate.upper()]
    if contains:
        for name, original in upper.items():
            if any(part in name for part in contains):
                return original
    return None


def _cell_text(value):
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    return to_comparable_string(value)


def read_cycle_dates(frame: pd.DataFrame):
    """
    Build ``{dfu: {part: {"sos", "eos", "comments"}}}`` from a lifecycle sheet.

    Rows without both a DFU and a part code are skipped. Missing dates become ``"N/A"``.
    """
    dfu_col = _find_column(frame.columns, "DFU")
    part_col = _find_column(frame.columns, "Part Code", contains=("PART", "CODE"))
    if dfu_col is None or part_col is None:
        raise UploadValidationError("Cycle data needs DFU and Part Code columns")
    sos_col = _find_column(frame.columns, "SOS")
    eos_col = _find_column(frame.columns, "EOS")
    comments_col = _find_column(frame.columns, "Comments", "Comment")

    cycle = {}
    for row in frame.to_dict(orient="records"):
        dfu_code = _cell_text(row.get(dfu_col))
        part = _cell_text(row.get(part_col))
        if not dfu_code or not part:
            continue
        sos = _cell_text(row.get(sos_col)) if sos_col is not None else ""
        eos = _cell_text(row.get(eos_col)) if eos_col is not None else ""
        cycle.setdefault(dfu_code, {})[part] = {
            "sos": sos or NOT_AVAILABLE,
            "eos": eos or NOT_AVAILABLE,
            "comments": _cell_text(row.get(comments_col)) if comments_col is not None else "",
        }

    logger.info("Processed cycle data for %d DFUs", len(cycle))
    return cycle


def sum_quantities(frame: pd.DataFrame, product_column, quantity_column):
    """Total quantity per product code. Non-numeric quantities count as zero."""
    product_col = _find_column(frame.columns, product_column)
    quantity_col = _find_column(frame.columns, quantity_column)
    missing = [name for name, col in ((product_column, product_col), (quantity_column, quantity_col)) if col is None]
    if missing:
        raise UploadValidationError(f"Missing columns: {', '.join(missing)}")

    data = pd.DataFrame({
        "product": frame[product_col].map(_cell_text),
        "quantity": pd.to_numeric(frame[quantity_col], errors="coerce").fillna(0),
    })
    data = data[data["product"] != ""]
    totals = data.groupby("product")["quantity"].sum()
    return {product: float(total) for product, total in totals.items()}


def read_frame(file):
    """First sheet of an uploaded workbook as a DataFrame."""
    try:
        return pd.read_excel(file, engine="openpyxl")
    except (ValueError, KeyError, OSError) as e:
        raise UploadValidationError(f"Unable to read workbook: {e}")


class SupplementaryData:
    def __init__(self, cycle=None, quantities=None):
        self.cycle = cycle or {}
        self.quantities = {name: dict((quantities or {}).get(name) or {}) for name in QUANTITY_DATASETS}

    @property
    def loaded(self):
        return [name for name in DATASETS if self.payload(name)]

    def payload(self, dataset):
        if dataset == CYCLE:
            return self.cycle
        return self.quantities.get(dataset, {})

    def set_dataset(self, dataset, payload):
        if dataset == CYCLE:
            self.cycle = payload
        elif dataset in QUANTITY_DATASETS:
            self.quantities[dataset] = payload
        else:
            raise UploadValidationError(f"Unknown dataset {dataset!r}")

    def details_for(self, dfu_code, variant):
        """Display extras for one variant of one DFU."""
        details = {}
        cycle = self.cycle.get(to_comparable_string(dfu_code), {}).get(to_comparable_string(variant))
        if cycle:
            details.update(cycle)
        for dataset, key in QUANTITY_DATASETS.items():
            totals = self.quantities.get(dataset)
            if totals:
                details[key] = totals.get(to_comparable_string(variant), 0.0)
        return details

    def clear(self):
        self.cycle = {}
        self.quantities = {name: {} for name in QUANTITY_DATASETS}

    def to_dict(self):
        return {name: self.payload(name) for name in DATASETS}

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(cycle=data.get(CYCLE), quantities={name: data.get(name) for name in QUANTITY_DATASETS})


def parse_dataset(dataset, file, column_config=None):
    """
    Read one uploaded supplementary workbook into its stored payload.

    :param dataset: One of ``cycle``, ``stock``, ``supply``, ``transit``.
    :param file: File-like workbook.
    :param column_config: Optional ``{"product_column", "quantity_column"}`` override.
    :raises UploadValidationError: Unknown dataset, unreadable file or missing columns.
    """
    if dataset not in DATASETS:
        raise UploadValidationError(f"Unknown dataset {dataset!r}. Expected one of: {', '.join(DATASETS)}")
    frame = read_frame(file)
    if frame.empty:
        raise UploadValidationError(f"No data found in the {dataset} file")
    if dataset == CYCLE:
        return read_cycle_dates(frame)
    columns = dict(DEFAULT_QUANTITY_COLUMNS[dataset])
    columns.update(column_config or {})
    return sum_quantities(frame, columns["product_column"], columns["quantity_column"])
