import openpyxl
from io import BytesIO
import logging
from datetime import date, datetime

from services.exceptions import UploadValidationError
from services.records import CALENDAR_WEEK, REQUIRED_COLUMNS, TRANSFER_HISTORY


# Configure logging
logger = logging.getLogger(__name__)

DEMAND_SHEET_PREFERENCE = ["Total Demand", "Open Fcst", "Demand", "Sheet1"]
EXPORT_SHEET_NAME = "Updated Demand"


def format_calendar_week(value):
    """Calendar.week as ``YYYY-MM-DD``; anything unparseable is returned unchanged."""
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, str) and value.strip():
        text = value.strip()
        for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%d/%m/%Y"):
            try:
                return datetime.strptime(text, fmt).strftime("%Y-%m-%d")
            except ValueError:
                continue
    return value


def _cell_value(value):
    if isinstance(value, datetime):
        if value.hour == value.minute == value.second == 0:
            return value.strftime("%Y-%m-%d")
        return value.isoformat()
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    return value


class OpenPyXLFileHandler:
    """
    A file handler class that abstracts operations for reading and writing Excel files using openpyxl.
    """

    def __init__(self, workbook=None):
        """
        Initialize the file handler with an existing workbook.
        """
        self.workbook = workbook

    @classmethod
    def from_file(cls, file_path, data_only=True):
        """
        Initialize the file handler with an Excel file from disk.

        Args:
            file_path (str): Path to the Excel file.
            data_only (bool): Whether to read the values instead of formulas.

        Returns:
            OpenPyXLFileHandler: An initialized file handler.
        """
        logger.debug(f"File path we're loading the excel from is {file_path}")
        workbook = openpyxl.load_workbook(file_path, data_only=data_only)
        return cls(workbook=workbook)

    @classmethod
    def from_file_like(cls, file, data_only=True):
        """
        Initialize the file handler with a file-like object.

        Args:
            file: A file-like object (e.g., from `request.files`).
            data_only (bool): Whether to read the values instead of formulas.

        Returns:
            OpenPyXLFileHandler: An initialized file handler.

        Raises:
            UploadValidationError: If the file is not a readable workbook.
        """
        try:
            workbook = openpyxl.load_workbook(BytesIO(file.read()), data_only=data_only)
        except Exception as e:
            raise UploadValidationError(f"Unable to read workbook: {e}")
        return cls(workbook=workbook)

    @classmethod
    def from_records(cls, records, sheet_name=EXPORT_SHEET_NAME):
        """
        Build a single-sheet workbook from record dicts.

        Headers are taken in first-seen order across all records, with
        Transfer History kept as the last column. Calendar.week values are
        written as ``YYYY-MM-DD``.
        """
        headers = []
        for record in records:
            for key in record.keys():
                if key not in headers and key != TRANSFER_HISTORY:
                    headers.append(key)
        if any(TRANSFER_HISTORY in record for record in records):
            headers.append(TRANSFER_HISTORY)

        rows = []
        for record in records:
            row = []
            for header in headers:
                value = record.get(header)
                if header == CALENDAR_WEEK:
                    value = format_calendar_week(value)
                row.append(value)
            rows.append(row)

        handler = cls()
        handler._create_excel_file({sheet_name: rows}, {"headers": headers, "header_row": 1})
        return handler

    def get_sheet_names(self):
        """
        Get the names of all sheets in the workbook.

        :return: List of sheet names
        :rtype: list[str]
        """
        if self.workbook is None:
            raise ValueError("Workbook is not loaded.")
        return self.workbook.sheetnames

    def get_sheet(self, sheet_name):
        """
        Get a specific sheet by name.

        :param sheet_name: Name of the sheet
        :type sheet_name: str
        :return: The sheet object
        :rtype: openpyxl.worksheet.worksheet.Worksheet
        """
        if self.workbook is None:
            raise ValueError("Workbook is not loaded.")
        return self.workbook[sheet_name]

    def get_headers(self, sheet, header_row):
        """
        Get headers from a specific row in a sheet, trimmed.

        :param sheet: The sheet object
        :type sheet: openpyxl.worksheet.worksheet.Worksheet
        :param header_row: The row number containing headers
        :type header_row: int
        :return: List of headers
        :rtype: list[str]
        """
        headers = []
        for col in range(1, sheet.max_column + 1):
            value = sheet.cell(row=header_row, column=col).value
            headers.append(value.strip() if isinstance(value, str) else value)
        return headers

    def get_rows(self, sheet, start_row):
        """
        Get all rows starting from a specific row.

        :param sheet: The sheet object
        :type sheet: openpyxl.worksheet.worksheet.Worksheet
        :param start_row: The starting row number
        :type start_row: int
        :return: List of rows, where each row is a tuple of cell values
        :rtype: list[tuple]
        """
        return list(sheet.iter_rows(min_row=start_row, values_only=True))

    def choose_sheet(self, preferences=None):
        """
        Pick the sheet holding demand data: the first preferred name present,
        otherwise the first sheet in the workbook.
        """
        names = self.get_sheet_names()
        for name in preferences or DEMAND_SHEET_PREFERENCE:
            if name in names:
                return name
        return names[0]

    def read_sheet_to_dict(self, sheet_name, header_row: int = 1):
        """
        Read one sheet into a list of row dicts keyed by header.

        Blank rows and columns without a header are skipped. Date cells are
        converted to ISO strings.

        :param sheet_name: Sheet to read.
        :param header_row: Row holding the headers.
        :rtype: list[dict]
        """
        sheet = self.get_sheet(sheet_name)
        headers = self.get_headers(sheet, header_row)
        records = []
        for row in self.get_rows(sheet, header_row + 1):
            if not any(value not in (None, "") for value in row):
                continue
            records.append({
                header: _cell_value(value)
                for header, value in zip(headers, row)
                if header not in (None, "")
            })
        return records

    def read_demand_records(self, preferences=None, required_columns=None):
        """
        Read the demand sheet and check the required columns are present.

        :return: (sheet name, records)
        :raises UploadValidationError: Missing columns or no data rows.
        """
        sheet_name = self.choose_sheet(preferences)
        sheet = self.get_sheet(sheet_name)
        headers = self.get_headers(sheet, 1)
        required = required_columns or REQUIRED_COLUMNS
        missing = [col for col in required if col not in headers]
        if missing:
            raise UploadValidationError(
                f"Sheet '{sheet_name}' is missing required columns: {', '.join(missing)}"
            )

        records = self.read_sheet_to_dict(sheet_name)
        if not records:
            raise UploadValidationError(f"Sheet '{sheet_name}' contains no data rows")
        logger.info(f"Read {len(records)} records from sheet '{sheet_name}'")
        return sheet_name, records

    def _create_excel_file(self, sheets_data, sheets_header_data):
        """
        Internal method to create a new Excel workbook with multiple sheets.

        Args:
            sheets_data (dict): Dictionary where keys are sheet names, and values are lists of rows.
            sheets_header_data (dict): Contains:
                - `headers`: List of column headers.
                - `header_row`: Row index for headers (default is 1).

        Modifies:
            self.workbook: Sets this attribute to the newly created workbook.
        """
        self.workbook = openpyxl.Workbook()

        headers = sheets_header_data["headers"]
        header_row = sheets_header_data.get("header_row", 1)

        for idx, (sheet_name, rows) in enumerate(sheets_data.items(), start=1):
            if idx == 1:
                sheet = self.workbook.active
                sheet.title = sheet_name
            else:
                sheet = self.workbook.create_sheet(title=sheet_name)

            for col_num, header in enumerate(headers, start=1):
                sheet.cell(row=header_row, column=col_num, value=header)

            data_start_row = header_row + 1
            for row_idx, row in enumerate(rows, start=data_start_row):
                for col_idx, value in enumerate(row, start=1):
                    sheet.cell(row=row_idx, column=col_idx, value=value)

    def save_to_bytes(self):
        """
        Save the workbook into an in-memory buffer, rewound for reading.

        :rtype: BytesIO
        """
        if self.workbook is None:
            raise ValueError("No workbook is loaded or created to save.")
        output = BytesIO()
        self.workbook.save(output)
        output.seek(0)
        return output
