import json


def log_action(db, trace_id, action_type, metadata=None):
    db.execute(
        "INSERT INTO actions (trace_id, action_type, metadata) VALUES (?, ?, ?)",
        (trace_id, action_type, json.dumps(metadata) if metadata else None)
    )
    db.commit()


def get_actions(db, trace_id):
    """History for one request id, oldest first."""
    cursor = db.execute(
        "SELECT action_type, timestamp, metadata FROM actions WHERE trace_id = ? ORDER BY id",
        (trace_id,)
    )
    return [
        (action_type, ts, json.loads(metadata) if metadata else None)
        for action_type, ts, metadata in cursor.fetchall()
    ]
