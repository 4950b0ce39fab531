"""Per-case transaction ledger with merge-by-id semantics."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Tuple

from .model import Transaction, sort_transactions


class Ledger:
    """Ordered set of one case's transactions, keyed by id.

    merge() is serialized by an internal lock; snapshot() returns an
    immutable sorted tuple that detectors can share across threads.
    """

    def __init__(self, case_id: str, transactions: Iterable[Transaction] = ()):
        self.case_id = case_id
        self._lock = threading.Lock()
        self._by_id: Dict[str, Transaction] = {}
        self._sorted: Tuple[Transaction, ...] = ()
        self.merge(transactions)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, tx_id: str) -> bool:
        return tx_id in self._by_id

    def get(self, tx_id: str):
        return self._by_id.get(tx_id)

    def merge(self, transactions: Iterable[Transaction]) -> Dict[str, int]:
        """Insert new ids, overwrite existing ids (last write wins).

        Returns {"inserted": n, "updated": m}.
        """
        incoming = list(transactions)
        for tx in incoming:
            if tx.case_id != self.case_id:
                raise ValueError(f"transaction {tx.id} belongs to case {tx.case_id}, not {self.case_id}")

        with self._lock:
            by_id = dict(self._by_id)
            inserted = updated = 0
            for tx in incoming:
                if tx.id in by_id:
                    updated += 1
                else:
                    inserted += 1
                by_id[tx.id] = tx
            # publish both views together
            self._sorted = tuple(sort_transactions(by_id.values()))
            self._by_id = by_id
        return {"inserted": inserted, "updated": updated}

    def sorted(self) -> List[Transaction]:
        """Ascending date, ties by id."""
        return list(self._sorted)

    def snapshot(self) -> Tuple[Transaction, ...]:
        return self._sorted

    def defaulted_count(self) -> int:
        """Rows carrying at least one defaulted field."""
        return sum(1 for tx in self._sorted if tx.defaulted_fields)
