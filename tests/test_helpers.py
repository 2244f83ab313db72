import io
from openpyxl import Workbook

DEMAND_HEADERS = [
    "DFU",
    "Product Number",
    "PartDescription",
    "weekly fcst",
    "Production Plant",
    "Production Line",
    "Week Number",
    "Source Location",
    "Calendar.week",
]


def make_record(dfu, variant, demand, week=1, location="PlantX", plant="P1", line="L1", description=None, **extra):
    """
    Build one demand record dict with the fixed column names.

    Args:
        dfu: DFU code.
        variant: Product Number.
        demand: weekly fcst value.
        week: Week Number.
        location: Source Location.
        plant: Production Plant.
        line: Production Line.
        description: PartDescription, defaults to "Part <variant>".
        extra: Any further columns.
    """
    record = {
        "DFU": dfu,
        "Product Number": variant,
        "PartDescription": description if description is not None else f"Part {variant}",
        "weekly fcst": demand,
        "Production Plant": plant,
        "Production Line": line,
        "Week Number": week,
        "Source Location": location,
    }
    record.update(extra)
    return record


def records_to_rows(records, headers=None):
    headers = headers or DEMAND_HEADERS
    return [headers] + [[record.get(h) for h in headers] for record in records]


def create_mock_excel(sheets_data):
    """
    Create an in-memory Excel file with specified sheet data.

    Args:
        sheets_data (dict): A dictionary where keys are sheet names and values are lists of rows.
                            Each row should be a list of cell values.

    Returns:
        BytesIO: A file-like object containing the Excel workbook.
    """
    wb = Workbook()

    for i, (sheet_name, rows) in enumerate(sheets_data.items()):
        ws = wb.active if i == 0 else wb.create_sheet(title=sheet_name)
        ws.title = sheet_name

        for row in rows:
            ws.append(row)

    excel_file = io.BytesIO()
    wb.save(excel_file)
    excel_file.seek(0)  # Reset file pointer to the beginning
    return excel_file


def create_demand_workbook(records, sheet_name="Total Demand", extra_sheets=None):
    """Demand workbook holding ``records`` on ``sheet_name``, optionally after other sheets."""
    sheets = dict(extra_sheets or {})
    sheets[sheet_name] = records_to_rows(records)
    return create_mock_excel(sheets)
