"""Case registry and audit log on top of SQLite."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from .engine import fetch_all, fetch_one, get_conn, new_id

log = logging.getLogger("rifscan.db.cases")


def _decode_metadata(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row and row.get("metadata"):
        try:
            row["metadata"] = json.loads(row["metadata"])
        except (json.JSONDecodeError, TypeError):
            row["metadata"] = {}
    return row


# ============================================================
# CASES
# ============================================================

def create_case(
    name: str,
    description: str = "",
    metadata: Optional[Dict[str, Any]] = None,
    case_id: str = "",
) -> Dict[str, Any]:
    """Create a new case. Returns the case dict."""
    case_id = case_id or new_id()
    meta_json = json.dumps(metadata or {}, ensure_ascii=False)
    with get_conn() as conn:
        conn.execute(
            """INSERT INTO cases (id, name, description, metadata)
               VALUES (?, ?, ?, ?)""",
            (case_id, name, description, meta_json),
        )
    log.info("Created case %s (%s)", case_id, name)
    return get_case(case_id)  # type: ignore


def ensure_case(case_id: str) -> None:
    """Register a case id if it is not known yet."""
    with get_conn() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO cases (id, name) VALUES (?, ?)",
            (case_id, case_id),
        )


def get_case(case_id: str) -> Optional[Dict[str, Any]]:
    return _decode_metadata(fetch_one("SELECT * FROM cases WHERE id = ?", (case_id,)))


def list_cases(status: Optional[str] = "active") -> List[Dict[str, Any]]:
    """List cases, most recently updated first."""
    if status:
        rows = fetch_all(
            "SELECT * FROM cases WHERE status = ? ORDER BY updated_at DESC, id",
            (status,),
        )
    else:
        rows = fetch_all("SELECT * FROM cases ORDER BY updated_at DESC, id")
    return [_decode_metadata(r) for r in rows]  # type: ignore


def delete_case(case_id: str) -> bool:
    """Hard delete. Cascades to transactions, rules and alerts."""
    with get_conn() as conn:
        cur = conn.execute("DELETE FROM cases WHERE id = ?", (case_id,))
    return cur.rowcount > 0


# ============================================================
# AUDIT LOG
# ============================================================

def log_audit(case_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO audit_log (id, case_id, action, details) VALUES (?, ?, ?, ?)",
            (new_id(), case_id, action, json.dumps(details or {}, ensure_ascii=False)),
        )


def list_audit(case_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    rows = fetch_all(
        "SELECT * FROM audit_log WHERE case_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
        (case_id, limit),
    )
    for row in rows:
        try:
            row["details"] = json.loads(row["details"])
        except (json.JSONDecodeError, TypeError):
            row["details"] = {}
    return rows
