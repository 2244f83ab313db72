from services.excel import OpenPyXLFileHandler
from services.exceptions import UploadValidationError
from services.supplementary import DATASETS, parse_dataset
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename
import logging
import os


# Configure logging
logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".xlsx", ".xlsm"}


def _check_file(file: FileStorage):
    if file is None or not file.filename:
        raise UploadValidationError("No file provided")
    ext = os.path.splitext(file.filename)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise UploadValidationError(f"Please upload an .xlsx or .xlsm file (got '{file.filename}')")


def _save_copy(file: FileStorage, upload_folder):
    """Keep the uploaded file in the upload folder; returns the saved path."""
    if not upload_folder:
        return None
    path = os.path.join(upload_folder, secure_filename(file.filename))
    file.save(path)
    file.stream.seek(0)
    return path


def upload_demand(
        service,
        demand_file: FileStorage,
        user: str = None,
        upload_folder: str = None,
        sheet_preference: list[str] = None,
        required_columns: list[str] = None,
):
    """
    Load a demand workbook into the shared session.

    :return: OperationResult from the service.
    :raises UploadValidationError: Bad file type, unreadable workbook or missing columns.
    """
    _check_file(demand_file)
    saved = _save_copy(demand_file, upload_folder)
    if saved:
        logger.debug(f"Demand file saved to {saved}")

    handler = OpenPyXLFileHandler.from_file_like(demand_file)
    sheet_name, records = handler.read_demand_records(sheet_preference, required_columns)
    logger.info(f"Uploading {len(records)} records from '{demand_file.filename}' sheet '{sheet_name}'")
    return service.upload_records(records, user=user, filename=demand_file.filename)


def upload_dataset(
        service,
        dataset: str,
        dataset_file: FileStorage,
        user: str = None,
        upload_folder: str = None,
        column_config: dict = None,
):
    """
    Load one supplementary dataset (cycle dates, stock, supply or transit).

    :return: OperationResult from the service.
    """
    if dataset not in DATASETS:
        raise UploadValidationError(f"Unknown dataset {dataset!r}; expected one of {', '.join(DATASETS)}")
    _check_file(dataset_file)
    _save_copy(dataset_file, upload_folder)
    payload = parse_dataset(dataset, dataset_file.stream, column_config)
    if not payload:
        raise UploadValidationError(f"No usable rows found in the {dataset} file")
    return service.load_supplementary(dataset, payload, user=user)
