"""Portfolio metrics over a case ledger.

Totals, balance, average ticket, top counterparties, per-day series,
method distribution and a weekday/hour activity heatmap. All money sums
stay Decimal end to end; to_dict() renders them as strings.
"""

from __future__ import annotations

import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .model import Method, Transaction, cent_context, money_sum, to_cents, utc

ZERO = Decimal("0.00")

_RANGE_RE = re.compile(r"^(\d+)([hdwmy])$")
_RANGE_UNITS = {"h": 1, "d": 24, "w": 24 * 7, "m": 24 * 30, "y": 24 * 365}


def parse_time_range(value: Optional[str]) -> Optional[timedelta]:
    """"7d" / "30d" / "90d" / "1y" -> timedelta, "all" or empty -> None."""
    s = (value or "").strip().lower()
    if not s or s == "all":
        return None
    m = _RANGE_RE.match(s)
    if not m:
        raise ValueError(f"Invalid time range: {value!r}")
    return timedelta(hours=int(m.group(1)) * _RANGE_UNITS[m.group(2)])


@dataclass
class MetricsFilter:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    time_range: Optional[str] = None      # anchored at the latest transaction
    min_amount: Optional[Decimal] = None
    method: Optional[Method] = None
    counterparty: Optional[str] = None    # case-insensitive substring (name or document)

    def apply(self, transactions: Sequence[Transaction]) -> List[Transaction]:
        txs = list(transactions)
        span = parse_time_range(self.time_range)
        if span is not None and txs:
            latest = max(t.date for t in txs)
            cutoff = latest - span
            txs = [t for t in txs if t.date >= cutoff]
        if self.start is not None:
            start = utc(self.start)
            txs = [t for t in txs if t.date >= start]
        if self.end is not None:
            end = utc(self.end)
            txs = [t for t in txs if t.date <= end]
        if self.min_amount is not None:
            if not self.min_amount.is_finite():
                raise ValueError(f"Invalid min_amount: {self.min_amount}")
            txs = [t for t in txs if t.amount >= self.min_amount]
        if self.method is not None:
            txs = [t for t in txs if t.method is self.method]
        if self.counterparty:
            needle = self.counterparty.strip().lower()
            txs = [
                t for t in txs
                if needle in t.counterparty.lower() or needle in t.counterparty_document
            ]
        return txs


@dataclass
class Metrics:
    total_credits: Decimal = ZERO
    total_debits: Decimal = ZERO
    balance: Decimal = ZERO
    average_ticket: Decimal = ZERO
    transaction_count: int = 0
    top_counterparties: List[Dict[str, Any]] = field(default_factory=list)
    period_series: List[Dict[str, Any]] = field(default_factory=list)
    method_distribution: List[Dict[str, Any]] = field(default_factory=list)
    time_heatmap: List[Dict[str, int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_credits": str(self.total_credits),
            "total_debits": str(self.total_debits),
            "balance": str(self.balance),
            "average_ticket": str(self.average_ticket),
            "transaction_count": self.transaction_count,
            "top_counterparties": [
                {**cp, "amount": str(cp["amount"])} for cp in self.top_counterparties
            ],
            "period_series": [
                {**p, "credits": str(p["credits"]), "debits": str(p["debits"])}
                for p in self.period_series
            ],
            "method_distribution": [
                {**m, "amount": str(m["amount"])} for m in self.method_distribution
            ],
            "time_heatmap": list(self.time_heatmap),
        }


def mean_amount(transactions: Iterable[Transaction]) -> Decimal:
    """Unrounded mean amount. 0.00 when empty."""
    amounts = [tx.amount for tx in transactions]
    if not amounts:
        return ZERO
    total = money_sum(amounts)
    with cent_context(total, extra=12):
        return total / len(amounts)


def average_ticket(transactions: Iterable[Transaction]) -> Decimal:
    """(credits + debits) / count, half-even at 2 digits. 0.00 when empty."""
    return to_cents(mean_amount(transactions))


def top_counterparties(transactions: Iterable[Transaction], limit: int = 10) -> List[Dict[str, Any]]:
    """Counterparties by total amount, ties by name."""
    amounts: Dict[str, List[Decimal]] = defaultdict(list)
    docs: Dict[str, str] = {}

    for tx in transactions:
        name = tx.counterparty or tx.counterparty_document or "unknown"
        amounts[name].append(tx.amount)
        if tx.counterparty_document and name not in docs:
            docs[name] = tx.counterparty_document

    totals = {name: money_sum(values) for name, values in amounts.items()}
    ranked = sorted(totals.items(), key=lambda x: (-x[1], x[0]))[:limit]
    return [
        {"name": name, "document": docs.get(name, ""), "amount": amount, "count": len(amounts[name])}
        for name, amount in ranked
    ]


def period_series(transactions: Iterable[Transaction]) -> List[Dict[str, Any]]:
    """Credit/debit sums per UTC calendar day."""
    credits: Dict[str, List[Decimal]] = defaultdict(list)
    debits: Dict[str, List[Decimal]] = defaultdict(list)

    for tx in transactions:
        day = tx.date.date().isoformat()
        if tx.is_credit:
            credits[day].append(tx.amount)
        else:
            debits[day].append(tx.amount)

    days = sorted(set(credits) | set(debits))
    return [
        {"date": d, "credits": money_sum(credits.get(d, ())), "debits": money_sum(debits.get(d, ()))}
        for d in days
    ]


def method_distribution(transactions: Iterable[Transaction]) -> List[Dict[str, Any]]:
    grouped: Dict[str, List[Decimal]] = defaultdict(list)
    for tx in transactions:
        grouped[tx.method.value].append(tx.amount)

    amounts = {m: money_sum(values) for m, values in grouped.items()}
    return [
        {"method": m, "amount": amounts[m], "count": len(grouped[m])}
        for m in sorted(amounts, key=lambda m: (-amounts[m], m))
    ]


def time_heatmap(transactions: Iterable[Transaction]) -> List[Dict[str, int]]:
    """Non-empty (weekday, hour) cells; day 0 is Monday."""
    cells: Counter = Counter()
    for tx in transactions:
        cells[(tx.date.weekday(), tx.date.hour)] += 1
    return [{"day": d, "hour": h, "count": c} for (d, h), c in sorted(cells.items())]


def compute_metrics(
    transactions: Sequence[Transaction],
    filters: Optional[MetricsFilter] = None,
    top_n: int = 10,
) -> Metrics:
    """Compute all metrics over the (optionally filtered) transactions."""
    if top_n < 0:
        raise ValueError(f"Invalid top_n: {top_n}")
    txs = filters.apply(transactions) if filters else list(transactions)

    credits = money_sum(t.amount for t in txs if t.is_credit)
    debits = money_sum(t.amount for t in txs if not t.is_credit)
    with cent_context(credits, debits, extra=1):
        balance = credits - debits

    return Metrics(
        total_credits=credits,
        total_debits=debits,
        balance=balance,
        average_ticket=average_ticket(txs),
        transaction_count=len(txs),
        top_counterparties=top_counterparties(txs, limit=top_n),
        period_series=period_series(txs),
        method_distribution=method_distribution(txs),
        time_heatmap=time_heatmap(txs),
    )
