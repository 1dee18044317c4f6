import os
import sqlite3


def init_db(path):
    """Open the ledger database, creating the schema on first use."""
    if path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    db = sqlite3.connect(path, check_same_thread=False)
    db.execute("PRAGMA journal_mode=WAL")

    db.executescript("""
        CREATE TABLE IF NOT EXISTS actions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            trace_id TEXT NOT NULL,
            timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
            action_type TEXT NOT NULL,
            metadata JSON
        );
        CREATE INDEX IF NOT EXISTS idx_actions_trace ON actions (trace_id);
    """)
    db.commit()
    return db
