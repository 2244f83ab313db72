import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from services.database import DatabaseError
from services.exceptions import StorageError


# Configure logging
logger = logging.getLogger(__name__)

DATA_UPLOADED = "data_uploaded"
DATASET_UPLOADED = "dataset_uploaded"
TRANSFER_APPLIED = "transfer_applied"
TRANSFER_UNDONE = "transfer_undone"
VARIANT_ADDED = "variant_added"
SELECTION_CHANGED = "selection_changed"
USER_JOINED = "user_joined"
SESSION_ENDED = "session_ended"


@dataclass
class ChangeNotification:
    """One change to the shared session, as broadcast to every connected client."""
    session_id: str
    operation: str
    dfu_code: Optional[str] = None
    user: Optional[str] = None
    details: dict = field(default_factory=dict)
    created_at: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self):
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "operation": self.operation,
            "dfuCode": self.dfu_code,
            "user": self.user,
            "details": self.details,
            "createdAt": self.created_at,
        }


def _row_to_notification(row):
    try:
        details = json.loads(row["payload"]) if row["payload"] else {}
    except (json.JSONDecodeError, TypeError):
        details = {"raw": row["payload"]}
    return ChangeNotification(
        session_id=row["session_id"],
        operation=row["event_type"],
        dfu_code=row["dfu_code"],
        user=row["user_name"],
        details=details,
        created_at=str(row["created_at"]) if row["created_at"] is not None else None,
        id=row["id"],
    )


class EventBroadcaster:
    """
    Publishes session changes.

    Every notification is appended to ``session_events`` so clients can poll
    for anything newer than the last id they saw, then handed to each
    registered listener. Publishing never raises: a failure is logged and the
    notification is returned without an id.
    """

    def __init__(self, db, lock=None):
        self.db = db
        self._lock = lock or threading.RLock()
        self._listeners = []

    def register_listener(self, listener: Callable[[ChangeNotification], None]):
        self._listeners.append(listener)

    def _store(self, notification):
        cursor = self.db.execute_query(
            "INSERT INTO session_events (session_id, event_type, dfu_code, user_name, payload) VALUES (?, ?, ?, ?, ?)",
            (
                notification.session_id,
                notification.operation,
                notification.dfu_code,
                notification.user,
                json.dumps(notification.details, default=str),
            ),
        )
        self.db.commit()
        notification.id = cursor.lastrowid

    def publish(self, notification: ChangeNotification) -> ChangeNotification:
        try:
            with self._lock:
                self._store(notification)
        except DatabaseError as e:
            logger.error(f"Failed to store {notification.operation} event for DFU {notification.dfu_code}: {e}")

        for listener in self._listeners:
            try:
                listener(notification)
            except Exception:
                logger.exception("Session event listener failed")
        return notification

    def events_since(self, session_id, last_id=0, limit=200) -> List[ChangeNotification]:
        """Notifications newer than ``last_id``, oldest first."""
        try:
            with self._lock:
                rows = self.db.execute_query(
                    "SELECT * FROM session_events WHERE session_id=? AND id>? ORDER BY id LIMIT ?",
                    (session_id, int(last_id or 0), int(limit)),
                ).fetchall()
        except DatabaseError as e:
            raise StorageError(f"Unable to read session events: {e}", operation="events")
        return [_row_to_notification(row) for row in rows]

    def latest_id(self, session_id):
        with self._lock:
            row = self.db.execute_query(
                "SELECT MAX(id) AS last_id FROM session_events WHERE session_id=?", (session_id,)
            ).fetchone()
        return (row["last_id"] if row else None) or 0
