"""Canonical records shared by every stage of the engine.

Transaction is the normalized, immutable ledger row. Rule is a toggleable
detector configuration and Alert is one scored finding with its evidence.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal, getcontext, localcontext
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

CENT = Decimal("0.01")


def cent_context(*values: Decimal, extra: int = 0):
    """Local decimal context wide enough to hold values exactly at cent scale."""
    ctx = getcontext().copy()
    digits = max((v.adjusted() for v in values if v.is_finite() and v), default=0)
    ctx.prec = max(ctx.prec, digits + 3 + extra)
    return localcontext(ctx)


def to_cents(value: Decimal, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    with cent_context(value):
        return value.quantize(CENT, rounding=rounding)


def money_sum(amounts: Iterable[Decimal]) -> Decimal:
    """Exact sum of cent amounts, whatever their magnitude."""
    amounts = list(amounts)
    with cent_context(*amounts, extra=len(str(len(amounts)))):
        return sum(amounts, Decimal("0.00"))


class TxType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class Method(str, Enum):
    PIX = "PIX"
    WIRE_IMMEDIATE = "wire-immediate"
    WIRE_BATCH = "wire-batch"
    CASH = "cash"
    CARD = "card"
    BILL = "bill"
    OTHER = "other"


SEVERITIES = ("low", "medium", "high")


@dataclass(frozen=True)
class Transaction:
    """One economic event of one case."""

    id: str
    case_id: str
    date: datetime                 # tz-aware, UTC
    amount: Decimal                # >= 0, scale 2
    type: TxType = TxType.DEBIT
    method: Method = Method.OTHER
    holder_document: str = ""
    counterparty_document: str = ""
    counterparty: str = ""
    bank: str = ""
    agency: str = ""
    account: str = ""
    description: str = ""
    evidence_id: str = ""
    defaulted_fields: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"negative amount for transaction {self.id}")
        if self.amount != to_cents(self.amount):
            raise ValueError(f"amount {self.amount} is not at 2-decimal scale")
        if self.date.tzinfo is None:
            raise ValueError(f"naive date for transaction {self.id}")

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.date, self.id)

    @property
    def is_credit(self) -> bool:
        return self.type is TxType.CREDIT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "date": self.date.astimezone(timezone.utc).isoformat(),
            "amount": str(self.amount),
            "type": self.type.value,
            "method": self.method.value,
            "holder_document": self.holder_document,
            "counterparty_document": self.counterparty_document,
            "counterparty": self.counterparty,
            "bank": self.bank,
            "agency": self.agency,
            "account": self.account,
            "description": self.description,
            "evidence_id": self.evidence_id,
            "defaulted_fields": list(self.defaulted_fields),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Transaction":
        """Rebuild a transaction from its stored form (see to_dict)."""
        date = datetime.fromisoformat(d["date"])
        if date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)
        defaulted = d.get("defaulted_fields") or ()
        return cls(
            id=d["id"],
            case_id=d["case_id"],
            date=date.astimezone(timezone.utc),
            amount=to_cents(Decimal(str(d["amount"]))),
            type=TxType(d.get("type", "debit")),
            method=Method(d.get("method", "other")),
            holder_document=d.get("holder_document", "") or "",
            counterparty_document=d.get("counterparty_document", "") or "",
            counterparty=d.get("counterparty", "") or "",
            bank=d.get("bank", "") or "",
            agency=d.get("agency", "") or "",
            account=d.get("account", "") or "",
            description=d.get("description", "") or "",
            evidence_id=d.get("evidence_id", "") or "",
            defaulted_fields=tuple(defaulted),
        )


@dataclass
class Rule:
    """Detector configuration. Defaults are case-independent."""

    id: str
    enabled: bool = True
    severity: str = "medium"
    parameters: Dict[str, Any] = field(default_factory=dict)
    label: str = ""
    description: str = ""

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"rule {self.id}: unknown severity {self.severity!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "enabled": self.enabled,
            "severity": self.severity,
            "parameters": dict(self.parameters),
            "label": self.label,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Rule":
        return cls(
            id=d["id"],
            enabled=bool(d.get("enabled", True)),
            severity=d.get("severity", "medium"),
            parameters=dict(d.get("parameters") or {}),
            label=d.get("label", ""),
            description=d.get("description", ""),
        )


@dataclass(frozen=True)
class Alert:
    """One red-flag finding. Derived data, regenerated on every run."""

    id: str
    case_id: str
    rule_id: str
    type: str
    description: str
    severity: str
    transaction_ids: Tuple[str, ...]
    parameters: Dict[str, Any]
    score: float
    explanation: str = ""

    @property
    def evidence_count(self) -> int:
        return len(self.transaction_ids)

    def fingerprint(self) -> Tuple[str, str, Tuple[str, ...], float]:
        """Identity used to compare two analysis runs."""
        return (self.type, self.severity, self.transaction_ids, self.score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "rule_id": self.rule_id,
            "type": self.type,
            "description": self.description,
            "severity": self.severity,
            "evidence_count": self.evidence_count,
            "transaction_ids": list(self.transaction_ids),
            "parameters": dict(self.parameters),
            "score": self.score,
            "explanation": self.explanation,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Alert":
        return cls(
            id=d["id"],
            case_id=d["case_id"],
            rule_id=d["rule_id"],
            type=d.get("type", d["rule_id"]),
            description=d.get("description", ""),
            severity=d.get("severity", "medium"),
            transaction_ids=tuple(d.get("transaction_ids") or ()),
            parameters=dict(d.get("parameters") or {}),
            score=float(d.get("score", 0)),
            explanation=d.get("explanation", "") or "",
        )


def alert_id(rule_id: str, case_id: str, transaction_ids: Iterable[str], anchor: str = "") -> str:
    """Deterministic alert id from rule, case and evidence."""
    key = f"{rule_id}|{case_id}|{anchor}|{','.join(transaction_ids)}"
    return f"{rule_id}-{hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]}"


def clamp_score(value: Decimal) -> float:
    """Clamp to [0, 100] and round to 2 decimals."""
    if value > 100:
        value = Decimal(100)
    if value < 0:
        value = Decimal(0)
    return float(value.quantize(CENT))


def sort_transactions(transactions: Iterable[Transaction]) -> List[Transaction]:
    """Ascending date, ties by id."""
    return sorted(transactions, key=lambda t: t.sort_key)


def utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
