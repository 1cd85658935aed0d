from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from .settings import settings

logger = logging.getLogger("crp")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

# Stable event codes, one per reconciler milestone.
DISCOVERY_STARTED = "DISCOVERY_STARTED"
DISCOVERY_COMPLETE = "DISCOVERY_COMPLETE"
DISCOVERY_FAILED = "DISCOVERY_FAILED"
DISCOVERY_NO_SERVICES = "DISCOVERY_NO_SERVICES"
SERVICE_PROCESSED = "SERVICE_PROCESSED"
SERVICE_FAILED = "SERVICE_FAILED"
METADATA_WARNING = "METADATA_WARNING"
ROUTER_CONFIGURED = "ROUTER_CONFIGURED"
ROUTER_REJECTED = "ROUTER_REJECTED"
TOKEN_FETCHED = "TOKEN_FETCHED"
TOKEN_FETCH_FAILED = "TOKEN_FETCH_FAILED"
TOKEN_INVALID = "TOKEN_INVALID"
CONFIG_GENERATED = "CONFIG_GENERATED"
CONFIG_SENT = "CONFIG_SENT"
CONFIG_SEND_FAILED = "CONFIG_SEND_FAILED"
POLL_FAILED = "POLL_FAILED"
POLL_STOPPED = "POLL_STOPPED"

_init_lock = Lock()
_ready: set[str] = set()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount created by Docker),
    the journal file is placed inside it.
    """
    p = os.path.abspath(settings.db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "crp.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create the events table if it does not exist."""
    path = _resolve_db_path()
    with _init_lock:
        with connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  service_name TEXT,
                  code TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )
        _ready.add(path)


def log_event(level: str, message: str, service_name: str | None = None, code: str | None = None) -> None:
    """Record an event on the ``crp`` logger and in the journal."""
    level = level.upper()
    prefix = f"[{code}] " if code else ""
    suffix = f" (service={service_name})" if service_name else ""
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s%s", prefix, message, suffix)

    # Per-router detail goes to the logger only; the journal keeps INFO and above.
    if not settings.events_enabled or level == "DEBUG":
        return
    try:
        if _resolve_db_path() not in _ready:
            init_db()
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, service_name, code, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level, service_name, code, message),
            )
    except sqlite3.Error as e:
        logger.warning("event journal write failed: %s: %s", type(e).__name__, e)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    if _resolve_db_path() not in _ready:
        init_db()
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
