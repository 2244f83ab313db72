import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from services.database import DatabaseError, DatabaseManager, clear_session_tables
from services.exceptions import StorageError
from services.models import CompletedTransfer
from services.supplementary import SupplementaryData


# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class SessionSnapshot:
    session_id: str
    records: List[dict] = field(default_factory=list)
    uploaded_records: List[dict] = field(default_factory=list)
    data_uploaded: bool = False
    source_filename: Optional[str] = None
    last_modified: Optional[str] = None
    last_modified_by: Optional[str] = None
    completed: Dict[str, CompletedTransfer] = field(default_factory=dict)
    supplementary: SupplementaryData = field(default_factory=SupplementaryData)


class SqliteSessionStore:
    """
    Persists the shared session in SQLite through a DatabaseManager.

    Every write commits before returning. Any DatabaseError is rolled back
    and re-raised as StorageError.
    """

    def __init__(self, db: DatabaseManager, session_id="shared", lock=None):
        self.db = db
        self.session_id = session_id
        self._lock = lock or threading.RLock()

    def _write(self, operation, fn, dfu_code=None):
        with self._lock:
            try:
                result = fn()
                self.db.commit()
                return result
            except DatabaseError as e:
                logger.exception(f"Storage failure during {operation}")
                try:
                    self.db.rollback()
                except DatabaseError:
                    logger.error(f"Rollback failed after {operation}")
                raise StorageError(f"Failed to save {operation}: {e}", dfu_code, operation)

    def _read(self, operation, fn):
        with self._lock:
            try:
                return fn()
            except DatabaseError as e:
                logger.exception(f"Storage failure during {operation}")
                raise StorageError(f"Failed to load {operation}: {e}", operation=operation)

    def _ensure_row(self):
        self.db.execute_query(
            "INSERT OR IGNORE INTO sessions (id, name) VALUES (?, ?)",
            (self.session_id, "Shared Session"),
        )

    def load_session(self) -> SessionSnapshot:
        def load():
            self._ensure_row()
            self.db.commit()
            row = self.db.execute_query("SELECT * FROM sessions WHERE id=?", (self.session_id,)).fetchone()
            snapshot = SessionSnapshot(
                session_id=self.session_id,
                records=json.loads(row["records"] or "[]"),
                uploaded_records=json.loads(row["uploaded_records"] or "[]"),
                data_uploaded=bool(row["data_uploaded"]),
                source_filename=row["source_filename"],
                last_modified=str(row["last_modified"]) if row["last_modified"] is not None else None,
                last_modified_by=row["last_modified_by"],
            )

            rows = self.db.execute_query(
                "SELECT dfu_code, entry FROM completed_transfers WHERE session_id=?", (self.session_id,)
            ).fetchall()
            for r in rows:
                snapshot.completed[r["dfu_code"]] = CompletedTransfer.from_dict(json.loads(r["entry"]))

            rows = self.db.execute_query(
                "SELECT dataset, payload FROM supplementary_data WHERE session_id=?", (self.session_id,)
            ).fetchall()
            snapshot.supplementary = SupplementaryData.from_dict(
                {r["dataset"]: json.loads(r["payload"]) for r in rows}
            )
            return snapshot

        snapshot = self._read("session", load)
        logger.info(
            "Loaded session %s: %d records, %d completed transfers",
            self.session_id, len(snapshot.records), len(snapshot.completed),
        )
        return snapshot

    def _save_records(self, records, uploaded_records=None, modified_by=None, source_filename=None):
        self._ensure_row()
        if uploaded_records is not None:
            self.db.execute_query(
                "UPDATE sessions SET records=?, uploaded_records=?, data_uploaded=1, source_filename=?, "
                "last_modified=CURRENT_TIMESTAMP, last_modified_by=? WHERE id=?",
                (
                    json.dumps(records, default=str),
                    json.dumps(uploaded_records, default=str),
                    source_filename,
                    modified_by,
                    self.session_id,
                ),
            )
        else:
            self.db.execute_query(
                "UPDATE sessions SET records=?, last_modified=CURRENT_TIMESTAMP, last_modified_by=? WHERE id=?",
                (json.dumps(records, default=str), modified_by, self.session_id),
            )

    def _upsert_completed(self, dfu_code, entry: CompletedTransfer):
        self.db.upsert(
            "completed_transfers",
            {
                "session_id": self.session_id,
                "dfu_code": dfu_code,
                "entry": json.dumps(entry.to_dict(), default=str),
            },
            ["session_id", "dfu_code"],
        )

    def save_session(self, records, uploaded_records=None, modified_by=None, source_filename=None):
        """
        Store the live record set. Passing ``uploaded_records`` marks a fresh upload:
        the snapshot is replaced and every completed transfer is dropped.
        """
        def write():
            self._save_records(records, uploaded_records, modified_by, source_filename)
            if uploaded_records is not None:
                self.db.delete_item("completed_transfers", {"session_id": self.session_id})

        self._write("session", write)

    def save_completed_transfer(self, dfu_code, entry: CompletedTransfer):
        self._write("completed transfer", lambda: self._upsert_completed(dfu_code, entry), dfu_code)

    def delete_completed_transfer(self, dfu_code):
        self._write(
            "completed transfer",
            lambda: self.db.delete_item("completed_transfers", {"session_id": self.session_id, "dfu_code": dfu_code}),
            dfu_code,
        )

    def save_dfu_change(self, records, dfu_code, entry: Optional[CompletedTransfer], modified_by=None):
        """
        Store a DFU change in one transaction: the full record set plus the DFU's
        completed transfer (``None`` deletes it).
        """
        def write():
            self._save_records(records, modified_by=modified_by)
            if entry is None:
                self.db.delete_item("completed_transfers", {"session_id": self.session_id, "dfu_code": dfu_code})
            else:
                self._upsert_completed(dfu_code, entry)

        self._write("transfer", write, dfu_code)

    def log_transfer(self, dfu_code, operation, payload=None, completed_by=None):
        """Append to the audit log. Returns the new row id."""
        def write():
            cursor = self.db.execute_query(
                "INSERT INTO transfer_log (session_id, dfu_code, operation, payload, completed_by) VALUES (?, ?, ?, ?, ?)",
                (self.session_id, dfu_code, operation, json.dumps(payload or {}, default=str), completed_by),
            )
            return cursor.lastrowid

        return self._write("transfer log", write, dfu_code)

    def transfer_log(self, dfu_code=None):
        def read():
            if dfu_code:
                rows = self.db.get_item("transfer_log", {"session_id": self.session_id, "dfu_code": dfu_code})
            else:
                rows = self.db.get_item("transfer_log", {"session_id": self.session_id})
            return [
                {
                    "id": r["id"],
                    "dfuCode": r["dfu_code"],
                    "operation": r["operation"],
                    "payload": json.loads(r["payload"] or "{}"),
                    "completedBy": r["completed_by"],
                    "completedAt": str(r["completed_at"]),
                }
                for r in rows
            ]

        return self._read("transfer log", read)

    def save_supplementary(self, dataset, payload):
        self._write(
            dataset,
            lambda: self.db.upsert(
                "supplementary_data",
                {"session_id": self.session_id, "dataset": dataset, "payload": json.dumps(payload, default=str)},
                ["session_id", "dataset"],
            ),
        )

    def clear_session(self):
        """Remove everything stored for the session, events included."""
        with self._lock:
            try:
                clear_session_tables(self.db, self.session_id)
            except DatabaseError as e:
                logger.exception("Storage failure while clearing session")
                raise StorageError(f"Failed to clear session: {e}", operation="end_session")
        logger.info("Session %s cleared", self.session_id)
