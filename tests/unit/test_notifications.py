from unittest.mock import MagicMock

from services.database import DatabaseError
from services.notifications import ChangeNotification, EventBroadcaster, TRANSFER_APPLIED


def _note(session_id="test", dfu="D1"):
    return ChangeNotification(session_id=session_id, operation=TRANSFER_APPLIED, dfu_code=dfu, user="alice",
                              details={"type": "bulk"})


def test_published_events_can_be_polled(broadcaster):
    first = broadcaster.publish(_note(dfu="D1"))
    second = broadcaster.publish(_note(dfu="D2"))

    assert first.id < second.id
    events = broadcaster.events_since("test", 0)
    assert [e.dfu_code for e in events] == ["D1", "D2"]
    assert events[0].details == {"type": "bulk"}
    assert [e.dfu_code for e in broadcaster.events_since("test", first.id)] == ["D2"]
    assert broadcaster.latest_id("test") == second.id


def test_events_are_scoped_to_session(broadcaster):
    broadcaster.publish(_note(session_id="other"))
    assert broadcaster.events_since("test", 0) == []
    assert broadcaster.latest_id("test") == 0


def test_listeners_receive_notifications(broadcaster):
    received = []
    broadcaster.register_listener(received.append)
    note = broadcaster.publish(_note())
    assert received == [note]


def test_publish_never_raises():
    db = MagicMock()
    db.execute_query.side_effect = DatabaseError("locked")
    broadcaster = EventBroadcaster(db)

    def broken_listener(notification):
        raise RuntimeError("socket closed")

    broadcaster.register_listener(broken_listener)
    note = broadcaster.publish(_note())

    assert note.id is None
