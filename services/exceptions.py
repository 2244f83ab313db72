class UploadValidationError(Exception):
    """Raised when an uploaded file fails validation (e.g., wrong sheet, missing columns)."""
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class TransferError(Exception):
    """Base class for errors raised by the demand transfer core."""
    def __init__(self, message, dfu_code=None, operation=None):
        super().__init__(message)
        self.message = message
        self.dfu_code = dfu_code
        self.operation = operation

    def to_dict(self):
        return {
            "success": False,
            "error": self.message,
            "dfuCode": self.dfu_code,
            "operation": self.operation,
        }


class ValidationError(TransferError):
    """Raised when a request is missing required identifiers or carries bad values."""


class NotFoundError(TransferError):
    """Raised when a DFU, or a completed transfer to undo, does not exist."""


class InvalidStateError(TransferError):
    """Raised when an operation is not possible in the current session state."""


class StorageError(TransferError):
    """Raised when the persistence layer fails. Never retried by the core."""
