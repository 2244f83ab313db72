import logging

from services.exceptions import NotFoundError, InvalidStateError
from services.records import copy_records, to_comparable_string


# Configure logging
logger = logging.getLogger(__name__)


def restorable_slice(completed, dfu_code):
    """
    The records to put back for ``dfu_code``.

    :param completed: Mapping of DFU code to CompletedTransfer.
    :raises NotFoundError: If the DFU has no completed transfer.
    :raises InvalidStateError: If the completed transfer carries no captured records.
    """
    dfu_code = to_comparable_string(dfu_code)
    entry = completed.get(dfu_code)
    if entry is None:
        raise NotFoundError(f"No completed transfer to undo for DFU {dfu_code}", dfu_code, "undo")
    if entry.original_records is None:
        raise InvalidStateError(f"DFU {dfu_code} has no captured original data to restore", dfu_code, "undo")
    return copy_records(entry.original_records)


def undo_dfu(store, completed, pending, dfu_code, persist=None):
    """
    Restore a DFU to the slice captured at its first transfer.

    The DFU's completed transfer and any pending selections are discarded.
    ``persist`` receives the full restored record set before memory changes.

    :return: Number of records restored.
    """
    dfu_code = to_comparable_string(dfu_code)
    original = restorable_slice(completed, dfu_code)
    restored = store.commit_dfu(dfu_code, original, persist=persist)
    completed.pop(dfu_code, None)
    pending.clear(dfu_code)
    logger.info("DFU %s restored to %d original records", dfu_code, restored)
    return restored
