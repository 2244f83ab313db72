import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from services.aggregation import DfuAggregate, aggregate_dfus, filter_options, search_aggregates
from services.exceptions import InvalidStateError, NotFoundError, UploadValidationError, ValidationError
from services.models import ExecutionSummary
from services.notifications import (
    ChangeNotification,
    DATA_UPLOADED,
    DATASET_UPLOADED,
    SELECTION_CHANGED,
    SESSION_ENDED,
    TRANSFER_APPLIED,
    TRANSFER_UNDONE,
    USER_JOINED,
    VARIANT_ADDED,
)
from services.record_store import RecordStore
from services.records import (
    DEMAND,
    PRODUCT_NUMBER,
    REQUIRED_COLUMNS,
    TRANSFER_HISTORY,
    append_history,
    audit_timestamp,
    dfu_of,
    location_of,
    to_comparable_string,
    variant_of,
    variant_value,
    week_of,
)
from services.selections import GRANULAR, GRANULAR_QUANTITY, INDIVIDUAL, PendingSelections
from services.supplementary import SupplementaryData
from services.transfer_engine import apply_selection, record_completion
from services.undo import undo_dfu


# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Outcome of a mutating call: what changed plus the notification that was broadcast."""
    notification: ChangeNotification
    summary: Optional[ExecutionSummary] = None
    aggregates: Dict[str, DfuAggregate] = field(default_factory=dict)
    records_affected: int = 0

    def to_dict(self):
        return {
            "success": True,
            "dfuCode": self.notification.dfu_code,
            "operation": self.notification.operation,
            "summary": self.summary.to_dict() if self.summary else None,
            "updatedAggregates": {code: agg.to_dict() for code, agg in self.aggregates.items()},
            "recordsAffected": self.records_affected,
            "notification": self.notification.to_dict(),
        }


class TransferService:
    """
    The shared transfer session.

    Holds the live records, pending selections, completed transfers and
    supplementary datasets for the one session every user works in. State is
    loaded lazily from the session store on first use. Each mutating call on a
    DFU runs under that DFU's lock, writes to storage, and only then swaps the
    in-memory state and broadcasts a notification.
    """

    def __init__(self, store, broadcaster, audit_timezone="Australia/Sydney", multi_variant_only=True):
        self.store = store
        self.broadcaster = broadcaster
        self.session_id = store.session_id
        self.audit_timezone = audit_timezone
        self.multi_variant_only = multi_variant_only

        self.records = RecordStore()
        self.pending = PendingSelections()
        self.completed = {}
        self.supplementary = SupplementaryData()
        self.data_uploaded = False
        self.source_filename = None
        self.users = set()

        self._loaded = False
        # bumped by every upload and session end
        self._generation = 0
        self._state_lock = threading.RLock()
        self._dfu_locks = {}
        self._dfu_locks_guard = threading.Lock()

    # --- plumbing ---------------------------------------------------------

    def _ensure_loaded(self):
        with self._state_lock:
            if self._loaded:
                return
            snapshot = self.store.load_session()
            self.records.replace_all(snapshot.records, snapshot.uploaded_records)
            self.completed = dict(snapshot.completed)
            self.supplementary = snapshot.supplementary
            self.data_uploaded = snapshot.data_uploaded
            self.source_filename = snapshot.source_filename
            self._loaded = True

    def _dfu_lock(self, dfu_code):
        with self._dfu_locks_guard:
            lock = self._dfu_locks.get(dfu_code)
            if lock is None:
                lock = threading.Lock()
                self._dfu_locks[dfu_code] = lock
            return lock

    def _timestamp(self):
        return audit_timestamp(self.audit_timezone)

    def _publish(self, operation, dfu_code=None, user=None, details=None):
        notification = ChangeNotification(
            session_id=self.session_id,
            operation=operation,
            dfu_code=dfu_code,
            user=user,
            details=details or {},
        )
        return self.broadcaster.publish(notification)

    def _log(self, dfu_code, operation, payload, user):
        try:
            self.store.log_transfer(dfu_code, operation, payload, user)
        except Exception:
            # The change itself is already stored; only the audit row is missing.
            logger.exception(f"Failed to write transfer log for DFU {dfu_code}")

    def _check_generation(self, generation, dfu_code, operation):
        """Call under ``_state_lock`` before committing a DFU change read at ``generation``."""
        if generation != self._generation:
            raise InvalidStateError(
                f"The session was reset while DFU {dfu_code} was being changed; reload and try again",
                dfu_code,
                operation,
            )

    def _read_dfu(self, dfu_code):
        with self._state_lock:
            return self._generation, self.records.dfu_records(dfu_code)

    def _completed_copy(self):
        with self._state_lock:
            return dict(self.completed)

    @staticmethod
    def _require_dfu(dfu_code, operation):
        dfu_code = to_comparable_string(dfu_code)
        if not dfu_code:
            raise ValidationError("DFU code is required", operation=operation)
        return dfu_code

    # --- queries ----------------------------------------------------------

    def get_aggregates(self, plant=None, line=None, search=None, multi_variant_only=False) -> Dict[str, DfuAggregate]:
        """DFU aggregates for the current records, optionally filtered and searched."""
        self._ensure_loaded()
        aggregates = aggregate_dfus(
            self.records.all_records(),
            plant=plant,
            line=line,
            completed=self._completed_copy(),
            supplementary=self.supplementary,
            multi_variant_only=multi_variant_only,
        )
        return search_aggregates(aggregates, search)

    def overview(self, plant=None, line=None, search=None, multi_variant_only=None):
        """Everything a client needs to render the session."""
        self._ensure_loaded()
        if multi_variant_only is None:
            multi_variant_only = self.multi_variant_only
        records = self.records.all_records()
        aggregates = self.get_aggregates(plant, line, search, multi_variant_only)
        return {
            "sessionId": self.session_id,
            "dataUploaded": self.data_uploaded,
            "sourceFilename": self.source_filename,
            "recordCount": len(records),
            "filterOptions": filter_options(records).to_dict(),
            "aggregates": {code: agg.to_dict() for code, agg in aggregates.items()},
            "pendingSelections": self.pending.to_dict(),
            "completedTransfers": {code: entry.metadata() for code, entry in self._completed_copy().items()},
            "supplementaryDatasets": self.supplementary.loaded,
            "users": sorted(self.users),
            "lastEventId": self.broadcaster.latest_id(self.session_id),
        }

    def records_for_export(self):
        self._ensure_loaded()
        return self.records.all_records()

    def events_since(self, last_id=0):
        return self.broadcaster.events_since(self.session_id, last_id)

    # --- session ----------------------------------------------------------

    def join(self, user):
        user = to_comparable_string(user)
        if not user:
            raise ValidationError("User name is required", operation="join")
        self._ensure_loaded()
        with self._state_lock:
            self.users.add(user)
        notification = self._publish(USER_JOINED, user=user)
        logger.info(f"User {user} joined session {self.session_id}")
        return {
            "success": True,
            "sessionId": self.session_id,
            "dataUploaded": self.data_uploaded,
            "lastEventId": notification.id or self.broadcaster.latest_id(self.session_id),
        }

    def upload_records(self, records, user=None, filename=None) -> OperationResult:
        """Replace the whole session with a freshly uploaded record set."""
        if not records:
            raise UploadValidationError("The uploaded sheet contains no data rows")
        missing = [col for col in REQUIRED_COLUMNS if col not in records[0]]
        if missing:
            raise UploadValidationError(f"Missing required columns: {', '.join(missing)}")

        self._ensure_loaded()
        with self._state_lock:
            self.store.save_session(records, uploaded_records=records, modified_by=user, source_filename=filename)
            self.records.replace_all(records, uploaded_snapshot=records)
            self._generation += 1
            self.completed = {}
            self.pending.clear_all()
            self.data_uploaded = True
            self.source_filename = filename

        dfu_count = len({dfu_of(r) for r in records if dfu_of(r)})
        logger.info(f"{user or 'Someone'} uploaded {len(records)} records covering {dfu_count} DFUs")
        notification = self._publish(
            DATA_UPLOADED, user=user, details={"recordCount": len(records), "dfuCount": dfu_count, "filename": filename}
        )
        return OperationResult(notification=notification, records_affected=len(records))

    def load_supplementary(self, dataset, payload, user=None) -> OperationResult:
        self._ensure_loaded()
        with self._state_lock:
            self.store.save_supplementary(dataset, payload)
            self.supplementary.set_dataset(dataset, payload)
        logger.info(f"{dataset} data loaded with {len(payload)} entries")
        notification = self._publish(DATASET_UPLOADED, user=user, details={"dataset": dataset, "entries": len(payload)})
        return OperationResult(notification=notification, records_affected=len(payload))

    def end_session(self, user=None) -> OperationResult:
        """Clear all records, transfers and events for everyone."""
        with self._state_lock:
            self.store.clear_session()
            self.records.clear()
            self._generation += 1
            self.completed = {}
            self.pending.clear_all()
            self.supplementary.clear()
            self.data_uploaded = False
            self.source_filename = None
            self.users = set()
            self._loaded = True
        logger.info(f"Session {self.session_id} ended by {user or 'unknown user'}")
        notification = self._publish(SESSION_ENDED, user=user)
        return OperationResult(notification=notification)

    # --- selections -------------------------------------------------------

    def set_selection(self, dfu_code, selection, user=None) -> OperationResult:
        dfu_code = self._require_dfu(dfu_code, "select")
        self._ensure_loaded()
        if not self.records.has_dfu(dfu_code):
            raise NotFoundError(f"DFU {dfu_code} not found", dfu_code, "select")
        self.pending.set(dfu_code, selection)
        notification = self._publish(SELECTION_CHANGED, dfu_code, user, {"selection": selection.to_dict()})
        return OperationResult(notification=notification)

    def update_selection(self, dfu_code, payload, user=None) -> OperationResult:
        """
        Change one part of a DFU's pending selection.

        ``{"type": "individual", "source", "target"}`` maps (or, with a blank
        target, unmaps) one source variant. ``{"type": "granular", "source",
        "target", "weekKey", "customQuantity"}`` toggles one week; a week that
        is already selected keeps its selection and takes the new quantity when
        ``customQuantity`` is given. ``{"type": "granular_quantity", ...}`` only
        changes the quantity of a selected week (blank means the full demand).
        """
        dfu_code = self._require_dfu(dfu_code, "select")
        self._ensure_loaded()
        if not self.records.has_dfu(dfu_code):
            raise NotFoundError(f"DFU {dfu_code} not found", dfu_code, "select")
        payload = payload or {}
        kind = to_comparable_string(payload.get("type")).lower()
        source = to_comparable_string(payload.get("source"))
        if not source:
            raise ValidationError("Source variant is required", dfu_code, "select")

        if kind == INDIVIDUAL:
            self.pending.set_individual(dfu_code, source, payload.get("target"))
        elif kind in (GRANULAR, GRANULAR_QUANTITY):
            target = to_comparable_string(payload.get("target"))
            key = to_comparable_string(payload.get("weekKey"))
            if not target or not key:
                raise ValidationError("Granular selection needs a target and a week key", dfu_code, "select")
            if kind == GRANULAR:
                self.pending.toggle_week(dfu_code, source, target, key, payload.get("customQuantity"))
            elif not self.pending.set_week_quantity(dfu_code, source, target, key, payload.get("customQuantity")):
                raise ValidationError(
                    f"Week {key} is not selected for {source} → {target}", dfu_code, "select"
                )
        else:
            raise ValidationError(f"Unknown selection type {payload.get('type')!r}", dfu_code, "select")

        selection = self.pending.get(dfu_code)
        notification = self._publish(
            SELECTION_CHANGED, dfu_code, user, {"selection": selection.to_dict() if selection else None}
        )
        return OperationResult(notification=notification)

    def cancel_selection(self, dfu_code, user=None) -> OperationResult:
        dfu_code = self._require_dfu(dfu_code, "cancel")
        self.pending.clear(dfu_code)
        notification = self._publish(SELECTION_CHANGED, dfu_code, user, {"selection": None})
        return OperationResult(notification=notification)

    # --- mutations --------------------------------------------------------

    def apply_transfer(self, dfu_code, selection=None, user=None) -> OperationResult:
        """
        Execute a transfer on one DFU.

        With no explicit ``selection`` the DFU's pending selection is used,
        checking bulk, then individual, then granular.

        :raises ValidationError: Blank DFU code or nothing selected.
        :raises NotFoundError: The DFU has no records.
        :raises InvalidStateError: The session was re-uploaded or ended mid-transfer; nothing changed.
        :raises StorageError: Persisting failed; nothing changed.
        """
        dfu_code = self._require_dfu(dfu_code, "transfer")
        self._ensure_loaded()

        with self._dfu_lock(dfu_code):
            generation, before = self._read_dfu(dfu_code)
            if not before:
                raise NotFoundError(f"DFU {dfu_code} not found", dfu_code, "transfer")
            if selection is None:
                selection = self.pending.get(dfu_code)
            if selection is None or selection.is_empty():
                raise ValidationError(f"No transfers selected for DFU {dfu_code}", dfu_code, "transfer")

            timestamp = self._timestamp()
            result = apply_selection(before, selection, timestamp)
            with self._state_lock:
                self._check_generation(generation, dfu_code, "transfer")
                entry = record_completion(
                    self.completed.get(dfu_code), dfu_code, before, selection, result, user, timestamp
                )
                self.records.commit_dfu(
                    dfu_code,
                    result.records,
                    persist=lambda records: self.store.save_dfu_change(records, dfu_code, entry, user),
                )
                self.completed[dfu_code] = entry
            self.pending.clear(dfu_code)

        logger.info(f"{user or 'Someone'} executed {selection.kind} transfer on DFU {dfu_code}: {result.summary}")
        self._log(dfu_code, selection.kind, {"selection": selection.to_dict(), "history": result.history}, user)
        notification = self._publish(
            TRANSFER_APPLIED, dfu_code, user, {"type": selection.kind, "summary": result.summary.to_dict()}
        )
        return OperationResult(
            notification=notification,
            summary=result.summary,
            aggregates=self.get_aggregates(),
            records_affected=len(result.records),
        )

    def undo_transfer(self, dfu_code, user=None) -> OperationResult:
        """
        Put a DFU back to how it was before its first transfer.

        :raises NotFoundError: The DFU has no completed transfer.
        :raises InvalidStateError: The completed transfer has nothing captured to restore.
        """
        dfu_code = self._require_dfu(dfu_code, "undo")
        self._ensure_loaded()

        with self._dfu_lock(dfu_code):
            with self._state_lock:
                restored = undo_dfu(
                    self.records,
                    self.completed,
                    self.pending,
                    dfu_code,
                    persist=lambda records: self.store.save_dfu_change(records, dfu_code, None, user),
                )

        self._log(dfu_code, "undo", {"recordsRestored": restored}, user)
        notification = self._publish(TRANSFER_UNDONE, dfu_code, user, {"recordsRestored": restored})
        return OperationResult(
            notification=notification,
            aggregates=self.get_aggregates(),
            records_affected=restored,
        )

    def add_variant(self, dfu_code, variant, user=None) -> OperationResult:
        """
        Add a variant to a DFU with zero demand in every week/location the DFU already covers.

        :raises ValidationError: Blank codes, or the variant already exists in the DFU.
        :raises NotFoundError: The DFU has no records.
        """
        dfu_code = self._require_dfu(dfu_code, "add_variant")
        variant = to_comparable_string(variant)
        if not variant:
            raise ValidationError("Variant code is required", dfu_code, "add_variant")
        self._ensure_loaded()

        with self._dfu_lock(dfu_code):
            generation, before = self._read_dfu(dfu_code)
            if not before:
                raise NotFoundError(f"DFU {dfu_code} not found", dfu_code, "add_variant")
            if any(variant_of(r) == variant for r in before):
                raise ValidationError(f"Variant {variant} already exists in DFU {dfu_code}", dfu_code, "add_variant")

            timestamp = self._timestamp()
            added = []
            seen = set()
            for record in before:
                key = (week_of(record), location_of(record))
                if key in seen:
                    continue
                seen.add(key)
                clone = copy.deepcopy(record)
                clone[PRODUCT_NUMBER] = variant_value(variant)
                clone[DEMAND] = 0.0
                clone[TRANSFER_HISTORY] = ""
                append_history(clone, f"[Variant {variant} added by {user or 'unknown'} @ {timestamp}]")
                added.append(clone)

            with self._state_lock:
                self._check_generation(generation, dfu_code, "add_variant")
                self.records.commit_dfu(
                    dfu_code,
                    before + added,
                    persist=lambda records: self.store.save_session(records, modified_by=user),
                )

        logger.info(f"Variant {variant} added to DFU {dfu_code} with {len(added)} records")
        self._log(dfu_code, "add_variant", {"variant": variant, "recordsAdded": len(added)}, user)
        notification = self._publish(VARIANT_ADDED, dfu_code, user, {"variant": variant, "recordsAdded": len(added)})
        return OperationResult(
            notification=notification,
            aggregates=self.get_aggregates(),
            records_affected=len(added),
        )
