from __future__ import annotations

import os
import sqlite3

from .migrations import apply_migrations

_MIGRATED_PATHS: set[str] = set()


def connect_db(path: str) -> sqlite3.Connection:
    if path != ":memory:":
        path = os.path.abspath(path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
    # Handlers run on the event loop thread, the test client runs the app on its own thread.
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    if path == ":memory:" or path not in _MIGRATED_PATHS:
        apply_migrations(conn)
        if path != ":memory:":
            _MIGRATED_PATHS.add(path)
    return conn
