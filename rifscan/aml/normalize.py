"""Transaction normalization.

Converts source rows (see sources.py) into canonical Transaction records:
dates to UTC instants, amounts to 2-digit Decimals, documents to digits,
free-text type/method values to the closed enumerations.

A row is dropped only when it has neither a usable date nor a usable
amount. Every other row is kept; fields that fall back to a default are
listed on the transaction (defaulted_fields) and reported as
NormalizationWarning records.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date as date_cls
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from .errors import NormalizationWarning
from .model import Method, Transaction, TxType, to_cents, utc
from .sources import RowFields, SourceRow

log = logging.getLogger("rifscan.aml.normalize")


def clean_text(text: Any) -> str:
    """Collapse whitespace and strip. None becomes empty string."""
    if text is None:
        return ""
    return re.sub(r"\s+", " ", str(text)).strip()


def strip_diacritics(text: str) -> str:
    """Remove accents for vocabulary matching (crédito -> credito)."""
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join(c for c in nfkd if not unicodedata.combining(c))


def _fold(text: Any) -> str:
    return strip_diacritics(clean_text(text)).lower()


# ============================================================
# Dates
# ============================================================

_DATE_FORMATS = ("%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y")
_TIME_SUFFIXES = ("", " %H:%M", " %H:%M:%S")


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date into a UTC instant. Returns None when unusable.

    Known formats first (DD/MM/YYYY, YYYY-MM-DD, DD-MM-YYYY, optional time),
    then a generic ISO-8601 parse. Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return utc(value)
    if isinstance(value, date_cls):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    s = clean_text(value)
    if not s:
        return None

    for fmt in _DATE_FORMATS:
        for suffix in _TIME_SUFFIXES:
            try:
                return datetime.strptime(s, fmt + suffix).replace(tzinfo=timezone.utc)
            except ValueError:
                continue

    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    return utc(parsed)


def normalize_date(value: Any, now: Optional[datetime] = None) -> datetime:
    """parse_date with the "now" default for missing/unparsable input."""
    parsed = parse_date(value)
    if parsed is not None:
        return parsed
    return utc(now) if now is not None else datetime.now(timezone.utc)


# ============================================================
# Amounts
# ============================================================

_CURRENCY_RE = re.compile(r"R\$|US\$|\$|€|BRL|USD|EUR", re.I)


def _is_negative(value: Any) -> bool:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return value < 0
    s = clean_text(value)
    s = _CURRENCY_RE.sub("", s).strip()
    return s.startswith("-") or (s.startswith("(") and s.endswith(")"))


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a monetary amount into an absolute Decimal at scale 2.

    "R$ 1.500,50" -> 1500.50, "1,500.50" -> 1500.50, "1500" -> 1500.00.
    When both separators appear the last one is the decimal separator.
    Returns None when the value has no usable number.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, int):
        number = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            return None
        number = Decimal(str(value))
    else:
        s = _CURRENCY_RE.sub("", str(value))
        s = s.replace("\xa0", "")
        s = re.sub(r"\s+", "", s)
        s = re.sub(r"[^\d,.]", "", s)
        if not re.search(r"\d", s):
            return None

        if "," in s and "." in s:
            if s.rfind(",") > s.rfind("."):
                s = s.replace(".", "").replace(",", ".")  # 1.500,50
            else:
                s = s.replace(",", "")                    # 1,500.50
        elif "," in s:
            s = s.replace(",", "") if s.count(",") > 1 else s.replace(",", ".")
        elif s.count(".") > 1:
            s = s.replace(".", "")                        # 1.500.000

        try:
            number = Decimal(s)
        except InvalidOperation:
            return None

    if not number.is_finite():
        return None
    return to_cents(number.copy_abs())


def normalize_amount(value: Any) -> Decimal:
    """parse_amount with the 0.00 default for unparsable input."""
    parsed = parse_amount(value)
    return parsed if parsed is not None else Decimal("0.00")


# ============================================================
# Documents, type, method
# ============================================================

_CPF_RE = re.compile(r"\d{3}\.\d{3}\.\d{3}-\d{2}")
_CNPJ_RE = re.compile(r"\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2}")


def normalize_document(value: Any) -> str:
    """Keep digits only (CPF/CNPJ punctuation is dropped)."""
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def extract_document(text: Any) -> str:
    """First CPF or CNPJ found in free text, digits only."""
    s = clean_text(text)
    if not s:
        return ""
    m = _CPF_RE.search(s) or _CNPJ_RE.search(s)
    return normalize_document(m.group(0)) if m else ""


_CREDIT_RE = re.compile(r"credit|credito|entrada|receb|positivo|^c$|^\+$")
_DEBIT_RE = re.compile(r"debit|debito|saida|pagamento|envio|negativo|^d$|^-$")


def parse_type(value: Any) -> Optional[TxType]:
    """credit/debit from free text, None when nothing matches."""
    s = _fold(value)
    if not s:
        return None
    if _CREDIT_RE.search(s):
        return TxType.CREDIT
    if _DEBIT_RE.search(s):
        return TxType.DEBIT
    return None


# Checked in order; the first match wins.
_METHOD_PATTERNS = (
    (re.compile(r"pix"), Method.PIX),
    (re.compile(r"wire-batch|\bdoc\b"), Method.WIRE_BATCH),
    (re.compile(r"wire|\bted\b|\btef\b|transferencia eletronica"), Method.WIRE_IMMEDIATE),
    (re.compile(r"especie|dinheiro|cash|saque|numerario"), Method.CASH),
    (re.compile(r"cartao|card"), Method.CARD),
    (re.compile(r"boleto|bill"), Method.BILL),
)


def parse_method(value: Any) -> Optional[Method]:
    """Payment channel from free text, None when nothing matches."""
    s = _fold(value)
    if not s:
        return None
    for pattern, method in _METHOD_PATTERNS:
        if pattern.search(s):
            return method
    if s == "other":
        return Method.OTHER
    return None


def compute_tx_id(case_id: str, evidence_id: str, index: int, fields: RowFields) -> str:
    """Stable id for rows that carry none: the same source re-ingested
    yields the same ids, so merge-by-id overwrites instead of duplicating."""
    key = "|".join([
        case_id,
        evidence_id,
        str(index),
        clean_text(fields.date),
        clean_text(fields.amount),
        normalize_document(fields.holder_document),
        normalize_document(fields.counterparty_document),
        clean_text(fields.description)[:100],
    ])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


# ============================================================
# Rows -> transactions
# ============================================================

@dataclass
class NormalizationResult:
    """Output of normalize_rows."""

    transactions: List[Transaction] = field(default_factory=list)
    warnings: List[NormalizationWarning] = field(default_factory=list)
    dropped_rows: List[int] = field(default_factory=list)

    @property
    def defaulted_rows(self) -> int:
        return len({w.row_index for w in self.warnings})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": len(self.transactions),
            "dropped": len(self.dropped_rows),
            "dropped_rows": list(self.dropped_rows),
            "defaulted_rows": self.defaulted_rows,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def normalize_row(
    row: SourceRow,
    index: int,
    case_id: str,
    evidence_id: str = "",
    now: Optional[datetime] = None,
) -> tuple:
    """Normalize one source row.

    Returns (Transaction or None, [NormalizationWarning]). None means the
    row had neither a usable date nor a usable amount.
    """
    fields = row.to_fields()
    tx_date = parse_date(fields.date)
    amount = parse_amount(fields.amount)
    if tx_date is None and amount is None:
        return None, []

    warnings: List[NormalizationWarning] = []

    def _default(name: str, raw: Any, default: str) -> None:
        warnings.append(NormalizationWarning(index, name, None if raw is None else str(raw), default))

    if tx_date is None:
        tx_date = normalize_date(None, now)
        _default("date", fields.date, tx_date.isoformat())
    if amount is None:
        amount = Decimal("0.00")
        _default("amount", fields.amount, "0.00")

    tx_type = parse_type(fields.type)
    if tx_type is None:
        if _is_negative(fields.amount):
            tx_type = TxType.DEBIT
        else:
            tx_type = TxType.DEBIT
            _default("type", fields.type, TxType.DEBIT.value)

    description = clean_text(fields.description)
    method = parse_method(fields.method)
    if method is None:
        if clean_text(fields.method):
            method = Method.OTHER
            _default("method", fields.method, Method.OTHER.value)
        else:
            # no channel column: the description often names it ("PIX Recebido")
            method = parse_method(description) or Method.OTHER

    holder = normalize_document(fields.holder_document) or extract_document(description)
    tx_id = clean_text(fields.id) or compute_tx_id(case_id, evidence_id, index, fields)

    tx = Transaction(
        id=tx_id,
        case_id=case_id,
        date=tx_date,
        amount=amount,
        type=tx_type,
        method=method,
        holder_document=holder,
        counterparty_document=normalize_document(fields.counterparty_document),
        counterparty=clean_text(fields.counterparty),
        bank=clean_text(fields.bank),
        agency=clean_text(fields.agency),
        account=clean_text(fields.account),
        description=description,
        evidence_id=clean_text(fields.evidence_id) or evidence_id,
        defaulted_fields=tuple(w.field for w in warnings),
    )
    return tx, warnings


def normalize_rows(
    rows: Sequence[SourceRow],
    case_id: str,
    evidence_id: str = "",
    now: Optional[datetime] = None,
) -> NormalizationResult:
    """Convert coerced source rows into canonical transactions.

    Args:
        rows: Output of sources.coerce_rows
        case_id: Owning case
        evidence_id: Source artifact reference (e.g. file name)
        now: Default instant for rows without a usable date

    Returns:
        NormalizationResult with transactions, warnings and dropped row indexes.
    """
    result = NormalizationResult()
    if now is None:
        now = datetime.now(timezone.utc)

    for index, row in enumerate(rows):
        tx, warnings = normalize_row(row, index, case_id, evidence_id, now)
        if tx is None:
            result.dropped_rows.append(index)
            continue
        result.transactions.append(tx)
        result.warnings.extend(warnings)

    if result.dropped_rows or result.warnings:
        log.info(
            "Case %s / %s: %d rows kept, %d dropped, %d with defaults",
            case_id, evidence_id or "-", len(result.transactions),
            len(result.dropped_rows), result.defaulted_rows,
        )
    return result
