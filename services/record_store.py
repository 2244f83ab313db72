import threading
import logging

from services.records import dfu_of, copy_records, to_comparable_string
from services.consolidation import consolidate_records


# Configure logging
logger = logging.getLogger(__name__)


class RecordStore:
    """
    Owns the live record sequence of the shared session plus the snapshot taken
    at upload time.

    All slice operations go through an internal lock so that transfers running
    on different DFUs at the same time never overwrite each other's slices.
    """

    def __init__(self, records=None, uploaded_snapshot=None):
        self._lock = threading.RLock()
        self._records = copy_records(records or [])
        if uploaded_snapshot is None:
            uploaded_snapshot = self._records
        self._uploaded_snapshot = tuple(copy_records(uploaded_snapshot))

    @property
    def uploaded_snapshot(self):
        """Copy of the records exactly as uploaded."""
        return copy_records(self._uploaded_snapshot)

    def __len__(self):
        with self._lock:
            return len(self._records)

    def all_records(self):
        """Deep copy of every live record."""
        with self._lock:
            return copy_records(self._records)

    def dfu_records(self, dfu_code):
        """Deep copy of the records belonging to one DFU, in store order."""
        dfu_code = to_comparable_string(dfu_code)
        with self._lock:
            return copy_records(r for r in self._records if dfu_of(r) == dfu_code)

    def has_dfu(self, dfu_code):
        dfu_code = to_comparable_string(dfu_code)
        with self._lock:
            return any(dfu_of(r) == dfu_code for r in self._records)

    def replace_all(self, records, uploaded_snapshot=None):
        with self._lock:
            self._records = copy_records(records)
            if uploaded_snapshot is not None:
                self._uploaded_snapshot = tuple(copy_records(uploaded_snapshot))

    def clear(self):
        with self._lock:
            self._records = []
            self._uploaded_snapshot = ()

    def _with_slice(self, dfu_code, new_slice):
        kept = [r for r in self._records if dfu_of(r) != dfu_code]
        return kept + copy_records(new_slice)

    def commit_dfu(self, dfu_code, new_slice, persist=None):
        """
        Replace the DFU's records with ``new_slice``.

        When ``persist`` is given it is called with the complete new record set
        first; only if it returns without raising is the live set swapped, so a
        storage failure leaves memory identical to what is stored.
        """
        dfu_code = to_comparable_string(dfu_code)
        with self._lock:
            candidate = self._with_slice(dfu_code, new_slice)
            if persist is not None:
                persist(copy_records(candidate))
            self._records = candidate
            logger.debug("DFU %s slice replaced: %d records in store", dfu_code, len(candidate))
            return len(new_slice)

    def consolidate_dfu(self, dfu_code):
        """Merge duplicate (variant, week, location) records of one DFU in place."""
        merged = consolidate_records(self.dfu_records(dfu_code))
        return self.commit_dfu(dfu_code, merged)
