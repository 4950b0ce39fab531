"""SQLite database engine for RIFscan.

Single-file database with WAL mode for concurrent reads.
One short-lived connection per get_conn() block.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

log = logging.getLogger("rifscan.db")

_SCHEMA_FILE = Path(__file__).parent / "schema.sql"
_DB_VERSION = "1.0.0"

_db_path: Optional[Path] = None
_initialized: bool = False


def _get_db_path() -> Path:
    """Resolve database file path from environment or default."""
    data_dir = os.environ.get("RIFSCAN_DATA_DIR", "")
    if data_dir:
        return Path(data_dir) / "rifscan.db"
    return Path(__file__).resolve().parents[2] / "data" / "rifscan.db"


def get_db_path() -> Path:
    global _db_path
    if _db_path is None:
        _db_path = _get_db_path()
    return _db_path


def set_db_path(path: Path) -> None:
    """Override DB path (for testing)."""
    global _db_path, _initialized
    _db_path = path
    _initialized = False


def new_id() -> str:
    """Generate a new UUID hex ID."""
    return uuid.uuid4().hex


def _connect(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def init_db(path: Optional[Path] = None) -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    global _initialized, _db_path
    if path:
        _db_path = path
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    log.info("Initializing database at %s", db_path)
    conn = _connect(db_path)
    try:
        conn.executescript(_SCHEMA_FILE.read_text(encoding="utf-8"))
        conn.execute(
            "INSERT OR REPLACE INTO system_config (key, value) VALUES (?, ?)",
            ("db_version", _DB_VERSION),
        )
        conn.commit()
        _initialized = True
        log.info("Database initialized (version %s)", _DB_VERSION)
    finally:
        conn.close()


def ensure_initialized() -> None:
    """Initialize on first use; re-initialize if the DB file was deleted."""
    global _initialized
    if _initialized and not get_db_path().exists():
        _initialized = False
    if not _initialized:
        init_db()


@contextmanager
def get_conn() -> Generator[sqlite3.Connection, None, None]:
    """Connection that commits on success and rolls back on any error.

    Usage:
        with get_conn() as conn:
            conn.execute("SELECT ...")
    """
    ensure_initialized()
    conn = _connect(get_db_path())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_one(sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
    """Execute and fetch one row as dict."""
    with get_conn() as conn:
        row = conn.execute(sql, params).fetchone()
        return dict(row) if row else None


def fetch_all(sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
    """Execute and fetch all rows as list of dicts."""
    with get_conn() as conn:
        rows = conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]


def get_system_config(key: str, default: str = "") -> str:
    row = fetch_one("SELECT value FROM system_config WHERE key = ?", (key,))
    return row["value"] if row else default
