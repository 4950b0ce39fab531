"""Case store: per-case ledger, rules and alerts.

CaseStore is the key-value interface the pipeline talks to. Two
implementations: MemoryCaseStore (tests, embedding) and SqliteCaseStore
(rifscan.db). Writes to one case are serialized with case_lock().
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

from ..db import cases as case_db
from ..db.engine import get_conn, new_id
from .errors import PersistenceError
from .ledger import Ledger
from .model import Alert, Rule, Transaction

log = logging.getLogger("rifscan.aml.store")


class CaseStore(ABC):
    """Key-value access to one case's ledger, rules and alerts."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def case_lock(self, case_id: str) -> threading.RLock:
        """Lock serializing merges and alert replacement for one case."""
        with self._locks_guard:
            lock = self._locks.get(case_id)
            if lock is None:
                lock = self._locks[case_id] = threading.RLock()
            return lock

    @abstractmethod
    def create_case(self, name: str, description: str = "", case_id: str = "") -> Dict[str, Any]: ...

    @abstractmethod
    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def list_cases(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_ledger(self, case_id: str) -> Ledger: ...

    @abstractmethod
    def put_ledger(self, case_id: str, ledger: Ledger) -> None: ...

    @abstractmethod
    def get_rules(self, case_id: str) -> Optional[List[Rule]]:
        """Stored rules, None when the case has none yet."""

    @abstractmethod
    def put_rules(self, case_id: str, rules: List[Rule]) -> None: ...

    @abstractmethod
    def get_alerts(self, case_id: str) -> List[Alert]: ...

    @abstractmethod
    def put_alerts(self, case_id: str, alerts: List[Alert]) -> None:
        """Replace the whole alert set of a case, all or nothing."""

    def record(self, case_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Audit trail hook. No-op unless the store keeps one."""


# ============================================================
# In-memory
# ============================================================

def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class MemoryCaseStore(CaseStore):
    """Dict-backed store. Readers get copies, never live objects."""

    def __init__(self):
        super().__init__()
        self._cases: Dict[str, Dict[str, Any]] = {}
        self._ledgers: Dict[str, tuple] = {}
        self._rules: Dict[str, List[Dict[str, Any]]] = {}
        self._alerts: Dict[str, tuple] = {}
        self.audit: List[Dict[str, Any]] = []

    def create_case(self, name: str, description: str = "", case_id: str = "") -> Dict[str, Any]:
        case_id = case_id or new_id()
        now = _now()
        self._cases[case_id] = {
            "id": case_id, "name": name, "description": description,
            "status": "active", "metadata": {}, "created_at": now, "updated_at": now,
        }
        return dict(self._cases[case_id])

    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]:
        case = self._cases.get(case_id)
        return dict(case) if case else None

    def list_cases(self) -> List[Dict[str, Any]]:
        return [dict(c) for c in self._cases.values()]

    def _ensure_case(self, case_id: str) -> None:
        if case_id not in self._cases:
            self.create_case(case_id, case_id=case_id)
        else:
            self._cases[case_id]["updated_at"] = _now()

    def get_ledger(self, case_id: str) -> Ledger:
        return Ledger(case_id, self._ledgers.get(case_id, ()))

    def put_ledger(self, case_id: str, ledger: Ledger) -> None:
        self._ensure_case(case_id)
        self._ledgers[case_id] = ledger.snapshot()

    def get_rules(self, case_id: str) -> Optional[List[Rule]]:
        stored = self._rules.get(case_id)
        if stored is None:
            return None
        return [Rule.from_dict(d) for d in stored]

    def put_rules(self, case_id: str, rules: List[Rule]) -> None:
        self._ensure_case(case_id)
        self._rules[case_id] = [r.to_dict() for r in rules]

    def get_alerts(self, case_id: str) -> List[Alert]:
        return list(self._alerts.get(case_id, ()))

    def put_alerts(self, case_id: str, alerts: List[Alert]) -> None:
        self._ensure_case(case_id)
        self._alerts[case_id] = tuple(alerts)

    def record(self, case_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.audit.append({"case_id": case_id, "action": action, "details": dict(details or {})})


# ============================================================
# SQLite
# ============================================================

@contextmanager
def _guard(operation: str) -> Generator[None, None, None]:
    try:
        yield
    except sqlite3.Error as e:
        log.error("Case store %s failed: %s", operation, e)
        raise PersistenceError(f"{operation} failed: {e}") from e


def _tx_row(tx: Transaction) -> tuple:
    return (
        tx.case_id, tx.id, tx.date.isoformat(), str(tx.amount), tx.type.value, tx.method.value,
        tx.holder_document, tx.counterparty_document, tx.counterparty,
        tx.bank, tx.agency, tx.account, tx.description, tx.evidence_id,
        json.dumps(list(tx.defaulted_fields)),
    )


class SqliteCaseStore(CaseStore):
    """Store on the rifscan.db SQLite engine.

    Every put_* runs in one get_conn() transaction: on any error the
    connection rolls back and PersistenceError is raised.
    """

    def create_case(self, name: str, description: str = "", case_id: str = "") -> Dict[str, Any]:
        with _guard("create_case"):
            return case_db.create_case(name, description, case_id=case_id)

    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]:
        with _guard("get_case"):
            return case_db.get_case(case_id)

    def list_cases(self) -> List[Dict[str, Any]]:
        with _guard("list_cases"):
            return case_db.list_cases()

    def get_ledger(self, case_id: str) -> Ledger:
        with _guard("get_ledger"), get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE case_id = ? ORDER BY date, id",
                (case_id,),
            ).fetchall()
        txs = []
        for row in rows:
            d = dict(row)
            d["defaulted_fields"] = json.loads(d.get("defaulted_fields") or "[]")
            txs.append(Transaction.from_dict(d))
        return Ledger(case_id, txs)

    def put_ledger(self, case_id: str, ledger: Ledger) -> None:
        with _guard("put_ledger"), get_conn() as conn:
            conn.execute("INSERT OR IGNORE INTO cases (id, name) VALUES (?, ?)", (case_id, case_id))
            conn.executemany(
                """INSERT OR REPLACE INTO transactions
                   (case_id, id, date, amount, type, method,
                    holder_document, counterparty_document, counterparty,
                    bank, agency, account, description, evidence_id, defaulted_fields)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [_tx_row(tx) for tx in ledger.snapshot()],
            )
            conn.execute(
                "UPDATE cases SET updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
                (case_id,),
            )

    def get_rules(self, case_id: str) -> Optional[List[Rule]]:
        with _guard("get_rules"), get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM case_rules WHERE case_id = ? ORDER BY position",
                (case_id,),
            ).fetchall()
        if not rows:
            return None
        return [
            Rule(
                id=r["rule_id"],
                enabled=bool(r["enabled"]),
                severity=r["severity"],
                parameters=json.loads(r["parameters"] or "{}"),
                label=r["label"],
                description=r["description"],
            )
            for r in rows
        ]

    def put_rules(self, case_id: str, rules: List[Rule]) -> None:
        with _guard("put_rules"), get_conn() as conn:
            conn.execute("INSERT OR IGNORE INTO cases (id, name) VALUES (?, ?)", (case_id, case_id))
            conn.execute("DELETE FROM case_rules WHERE case_id = ?", (case_id,))
            conn.executemany(
                """INSERT INTO case_rules
                   (case_id, rule_id, position, enabled, severity, parameters, label, description)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (case_id, r.id, i, int(r.enabled), r.severity,
                     json.dumps(r.parameters, ensure_ascii=False), r.label, r.description)
                    for i, r in enumerate(rules)
                ],
            )

    def get_alerts(self, case_id: str) -> List[Alert]:
        with _guard("get_alerts"), get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM alerts WHERE case_id = ? ORDER BY position",
                (case_id,),
            ).fetchall()
        out = []
        for row in rows:
            d = dict(row)
            d["transaction_ids"] = json.loads(d["transaction_ids"] or "[]")
            d["parameters"] = json.loads(d["parameters"] or "{}")
            out.append(Alert.from_dict(d))
        return out

    def put_alerts(self, case_id: str, alerts: List[Alert]) -> None:
        with _guard("put_alerts"), get_conn() as conn:
            conn.execute("INSERT OR IGNORE INTO cases (id, name) VALUES (?, ?)", (case_id, case_id))
            conn.execute("DELETE FROM alerts WHERE case_id = ?", (case_id,))
            conn.executemany(
                """INSERT INTO alerts
                   (case_id, id, position, rule_id, type, description, severity,
                    transaction_ids, parameters, score, explanation)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (case_id, a.id, i, a.rule_id, a.type, a.description, a.severity,
                     json.dumps(list(a.transaction_ids)),
                     json.dumps(a.parameters, ensure_ascii=False),
                     a.score, a.explanation)
                    for i, a in enumerate(alerts)
                ],
            )

    def record(self, case_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
        with _guard("record"):
            case_db.log_audit(case_id, action, details)
