"""SQLite history of plug events for the dashboard."""

import logging
import sqlite3
import threading
from datetime import datetime, timezone

import config
from events import GOT_HEARTBEAT

log = logging.getLogger(__name__)

_conn = None
_lock = threading.Lock()


def get_connection():
    global _conn
    if _conn is None:
        # Events arrive from every plug connection thread; _lock serializes use
        _conn = sqlite3.connect(config.DB_PATH, check_same_thread=False)
        _conn.row_factory = sqlite3.Row
        _conn.execute("PRAGMA journal_mode=WAL")
        _init_tables(_conn)
    return _conn


def _init_tables(conn):
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS plug_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            event TEXT NOT NULL,
            uid TEXT NOT NULL,
            name TEXT,
            state INTEGER
        );

        CREATE INDEX IF NOT EXISTS plug_events_uid ON plug_events (uid, id);

        CREATE TABLE IF NOT EXISTS heartbeat (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            timestamp TEXT NOT NULL
        );
    """)
    conn.commit()


def log_event(event):
    """Record one events.PlugEvent."""
    with _lock:
        conn = get_connection()
        conn.execute(
            "INSERT INTO plug_events (timestamp, event, uid, name, state) VALUES (?, ?, ?, ?, ?)",
            (event.timestamp.isoformat(), event.kind, event.uid, event.name, event.state),
        )
        conn.commit()


def update_heartbeat():
    """Mark the server alive; called whenever any plug sends a heartbeat."""
    with _lock:
        conn = get_connection()
        conn.execute(
            "INSERT OR REPLACE INTO heartbeat (id, timestamp) VALUES (1, ?)",
            (datetime.now(timezone.utc).isoformat(),),
        )
        conn.commit()


def handle_event(event):
    """EventBus subscriber: store the event and refresh the heartbeat row."""
    try:
        log_event(event)
        if event.kind == GOT_HEARTBEAT:
            update_heartbeat()
    except sqlite3.Error as e:
        log.error("Failed to log %s for %s: %s", event.kind, event.uid, e)


def recent_events(limit=None, uid=None):
    """Newest first, as plain dicts."""
    limit = limit or config.RECENT_EVENTS_LIMIT
    with _lock:
        conn = get_connection()
        if uid:
            rows = conn.execute(
                "SELECT timestamp, event, uid, name, state FROM plug_events "
                "WHERE uid = ? ORDER BY id DESC LIMIT ?",
                (uid, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT timestamp, event, uid, name, state FROM plug_events "
                "ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
    return [dict(r) for r in rows]


def last_heartbeat():
    with _lock:
        row = get_connection().execute("SELECT timestamp FROM heartbeat WHERE id = 1").fetchone()
    return row["timestamp"] if row else None


def close():
    global _conn
    with _lock:
        if _conn:
            _conn.close()
            _conn = None
