from __future__ import annotations

from courier.memory.action_log import get_actions, log_action
from courier.memory.database import init_db


def test_actions_are_returned_oldest_first(tmp_path):
    db = init_db(str(tmp_path / "db" / "courier.db"))

    log_action(db, "r1", "claimed")
    log_action(db, "r2", "claimed")
    log_action(db, "r1", "delivered", {"attempt": 1})

    history = get_actions(db, "r1")
    assert [(action, metadata) for action, _, metadata in history] == [
        ("claimed", None),
        ("delivered", {"attempt": 1}),
    ]


def test_unknown_trace_has_no_history():
    db = init_db(":memory:")

    assert get_actions(db, "nothing") == []
