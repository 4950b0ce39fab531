"""Red-flag detectors.

Each detector is a pure function (transactions, rule, case_id) -> [Alert].
Input is the case ledger (any order; detectors sort by date, id). Rule
parameters are validated here and reported as DetectorError when missing
or malformed. Detectors never mutate their input.
"""

from __future__ import annotations

import bisect
import logging
from collections import Counter, defaultdict
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Hashable, Iterable, List, Sequence, Tuple

from .errors import DetectorError
from .metrics import average_ticket
from .model import (
    Alert, Method, Rule, Transaction, alert_id, cent_context, clamp_score, money_sum, sort_transactions,
)

log = logging.getLogger("rifscan.aml.detectors")

Detector = Callable[[Sequence[Transaction], Rule, str], List[Alert]]


# ============================================================
# Parameter helpers
# ============================================================

def _raw_param(rule: Rule, name: str):
    if name not in rule.parameters:
        raise DetectorError(rule.id, f"missing parameter {name!r}")
    value = rule.parameters[name]
    if isinstance(value, bool) or value is None:
        raise DetectorError(rule.id, f"parameter {name!r} must be a number, got {value!r}")
    return value


def _number(rule: Rule, name: str) -> Decimal:
    """Positive decimal parameter."""
    value = _raw_param(rule, name)
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise DetectorError(rule.id, f"parameter {name!r} must be a number, got {value!r}") from None
    if not number.is_finite() or number <= 0:
        raise DetectorError(rule.id, f"parameter {name!r} must be positive, got {value!r}")
    return number


def _count(rule: Rule, name: str) -> int:
    number = _number(rule, name)
    if number != number.to_integral_value():
        raise DetectorError(rule.id, f"parameter {name!r} must be an integer, got {number}")
    return int(number)


def _hours(rule: Rule, name: str) -> timedelta:
    return timedelta(hours=float(_number(rule, name)))


def _ratio(rule: Rule, name: str) -> Decimal:
    number = _number(rule, name)
    if number > 1:
        raise DetectorError(rule.id, f"parameter {name!r} must be within 0-1, got {number}")
    return number


def _group(transactions: Iterable[Transaction], key: Callable[[Transaction], Hashable]) -> List[Tuple[Hashable, List[Transaction]]]:
    """Group keeping input order inside groups; groups ordered by key."""
    groups: Dict[Hashable, List[Transaction]] = defaultdict(list)
    for tx in transactions:
        groups[key(tx)].append(tx)
    return sorted(groups.items(), key=lambda kv: kv[0])


def _brl(amount: Decimal) -> str:
    return f"R$ {amount:,.2f}"


def _make_alert(
    rule: Rule,
    case_id: str,
    evidence: Sequence[Transaction],
    score: Decimal,
    description: str,
    explanation: str = "",
    anchor: str = "",
) -> Alert:
    ids = tuple(t.id for t in evidence)
    return Alert(
        id=alert_id(rule.id, case_id, ids, anchor),
        case_id=case_id,
        rule_id=rule.id,
        type=rule.id,
        description=description,
        severity=rule.severity,
        transaction_ids=ids,
        parameters=dict(rule.parameters),
        score=clamp_score(score),
        explanation=explanation,
    )


# ============================================================
# Core detectors
# ============================================================

def detect_structuring(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Fracionamento: PIX/cash credits below threshold clustered in a window.

    One alert per qualifying window start; overlapping windows are kept.
    """
    threshold = _number(rule, "threshold")
    window = _hours(rule, "windowHours")
    min_count = _count(rule, "minTransactions")

    eligible = (
        t for t in sort_transactions(transactions)
        if t.is_credit and t.method in (Method.PIX, Method.CASH)
    )
    alerts: List[Alert] = []
    for (holder, method), txs in _group(eligible, lambda t: (t.holder_document, t.method.value)):
        end = 0
        for i, start in enumerate(txs):
            limit = start.date + window
            if end < i:
                end = i
            while end < len(txs) and txs[end].date <= limit:
                end += 1
            below = [t for t in txs[i:end] if t.amount < threshold]
            if len(below) < min_count:
                continue
            total = money_sum(t.amount for t in below)
            alerts.append(_make_alert(
                rule, case_id, below,
                score=Decimal(len(below)) / Decimal(min_count) * 50,
                description=(
                    f"{len(below)} créditos via {method} abaixo de {_brl(threshold)} "
                    f"em {rule.parameters['windowHours']}h"
                ),
                explanation=(
                    f"Titular {holder or '-'}: {len(below)} transações somando {_brl(total)} "
                    f"a partir de {start.date.isoformat()}"
                ),
                anchor=start.id,
            ))
    return alerts


def detect_circularity(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Circularidade: A -> B -> C -> A debit chains of similar amounts.

    Only three-hop chains with three distinct parties, in chronological
    order, with both later hops inside the window of the first.
    """
    window = _hours(rule, "windowHours")
    similarity_min = _ratio(rule, "similarityThreshold")

    debits = [
        t for t in sort_transactions(transactions)
        if not t.is_credit and t.holder_document and t.counterparty_document
        and t.holder_document != t.counterparty_document
    ]
    by_holder: Dict[str, List[Transaction]] = defaultdict(list)
    for tx in debits:
        by_holder[tx.holder_document].append(tx)
    keys_by_holder = {h: [t.sort_key for t in txs] for h, txs in by_holder.items()}

    def _hops_from(party: str, after: Transaction, limit) -> Iterable[Transaction]:
        txs = by_holder.get(party)
        if not txs:
            return
        pos = bisect.bisect_right(keys_by_holder[party], after.sort_key)
        for tx in txs[pos:]:
            if tx.date > limit:
                break
            yield tx

    alerts: List[Alert] = []
    for tx_a in debits:
        a, b = tx_a.holder_document, tx_a.counterparty_document
        limit = tx_a.date + window
        for tx_b in _hops_from(b, tx_a, limit):
            c = tx_b.counterparty_document
            if c in (a, b):
                continue
            for tx_c in _hops_from(c, tx_b, limit):
                if tx_c.counterparty_document != a:
                    continue
                chain = (tx_a, tx_b, tx_c)
                mean = money_sum(t.amount for t in chain) / 3
                if mean <= 0:
                    continue
                similarity = min(t.amount / mean for t in chain)
                if similarity < similarity_min:
                    continue
                alerts.append(_make_alert(
                    rule, case_id, chain,
                    score=similarity * 100,
                    description=f"Fluxo circular {a} -> {b} -> {c} -> {a}",
                    explanation=(
                        f"Valores {', '.join(_brl(t.amount) for t in chain)}; "
                        f"similaridade {similarity:.4f}"
                    ),
                ))
    return alerts


def detect_fan_in_out(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Fan-in/fan-out: many distinct counterparties for one holder in a window."""
    threshold = _count(rule, "threshold")
    window = _hours(rule, "windowHours")

    alerts: List[Alert] = []
    holders = (t for t in sort_transactions(transactions) if t.holder_document)
    for holder, txs in _group(holders, lambda t: t.holder_document):
        docs: Counter = Counter()
        end = 0
        for i, start in enumerate(txs):
            if i > 0:
                prev = txs[i - 1].counterparty_document
                if prev:
                    docs[prev] -= 1
                    if docs[prev] <= 0:
                        del docs[prev]
            limit = start.date + window
            while end < len(txs) and txs[end].date <= limit:
                doc = txs[end].counterparty_document
                if doc:
                    docs[doc] += 1
                end += 1

            count = end - i
            unique = len(docs)
            if count < threshold or unique < threshold:
                continue
            alerts.append(_make_alert(
                rule, case_id, txs[i:end],
                score=Decimal(unique) / Decimal(threshold) * 60,
                description=f"{unique} contrapartes distintas em {count} transações",
                explanation=f"Titular {holder}, janela iniciada em {start.date.isoformat()}",
                anchor=start.id,
            ))
    return alerts


def detect_profile_drift(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Perfil incompatível: recent amounts far above the historical average.

    Holders with at least 10 transactions; the first 70% form the baseline.
    Only recent transactions within windowHours of the holder's latest one
    are checked.
    """
    multiplier = _number(rule, "multiplier")
    window = _hours(rule, "windowHours")

    alerts: List[Alert] = []
    holders = (t for t in sort_transactions(transactions) if t.holder_document)
    for holder, txs in _group(holders, lambda t: t.holder_document):
        if len(txs) < 10:
            continue
        split = len(txs) * 7 // 10
        history = money_sum(t.amount for t in txs[:split])
        if history <= 0:
            continue
        mean = average_ticket(txs[:split])
        horizon = txs[-1].date - window
        for tx in txs[split:]:
            if tx.date < horizon:
                continue
            # amount > (history / split) * multiplier, compared without division
            with cent_context(history, tx.amount, extra=len(str(split)) + len(multiplier.as_tuple().digits)):
                if tx.amount * split <= history * multiplier:
                    continue
                ratio = tx.amount * split / history
            alerts.append(_make_alert(
                rule, case_id, [tx],
                score=ratio * 20,
                description=f"Valor {_brl(tx.amount)} é {ratio:.1f}x a média histórica",
                explanation=f"Titular {holder}: ticket médio {_brl(mean)} nas {split} transações anteriores",
            ))
    return alerts


def detect_cash_intensity(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Espécie intensa: cash volume and share above limits for one holder."""
    threshold = _number(rule, "threshold")
    percentage = _number(rule, "percentage")

    alerts: List[Alert] = []
    holders = (t for t in sort_transactions(transactions) if t.holder_document)
    for holder, txs in _group(holders, lambda t: t.holder_document):
        cash = [t for t in txs if t.method is Method.CASH]
        if not cash:
            continue
        cash_sum = money_sum(t.amount for t in cash)
        total = money_sum(t.amount for t in txs)
        if total <= 0:
            continue
        cash_pct = cash_sum / total * 100
        if cash_sum <= threshold or cash_pct <= percentage:
            continue
        alerts.append(_make_alert(
            rule, case_id, cash,
            score=cash_pct,
            description=f"{cash_pct:.1f}% do volume em espécie ({_brl(cash_sum)})",
            explanation=f"Titular {holder}: {len(cash)} operações em espécie de {len(txs)}",
        ))
    return alerts


# ============================================================
# Supplementary detectors
# ============================================================

def detect_atypical_amount(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Transação atípica: single amount above threshold."""
    threshold = _number(rule, "threshold")
    alerts: List[Alert] = []
    for tx in sort_transactions(transactions):
        if tx.amount <= threshold:
            continue
        alerts.append(_make_alert(
            rule, case_id, [tx],
            score=tx.amount / threshold * 50,
            description=f"Transação de {_brl(tx.amount)} acima de {_brl(threshold)}",
            explanation=f"{tx.type.value} via {tx.method.value} em {tx.date.isoformat()}",
        ))
    return alerts


def detect_wire_sequence(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Sequência de TED: many immediate wires by one holder on one day."""
    min_count = _count(rule, "minTransactions")
    wires = (t for t in sort_transactions(transactions) if t.method is Method.WIRE_IMMEDIATE)

    alerts: List[Alert] = []
    for (holder, day), txs in _group(wires, lambda t: (t.holder_document, t.date.date().isoformat())):
        if len(txs) < min_count:
            continue
        total = money_sum(t.amount for t in txs)
        alerts.append(_make_alert(
            rule, case_id, txs,
            score=Decimal(len(txs)) / Decimal(min_count) * 40,
            description=f"{len(txs)} TEDs no mesmo dia ({day})",
            explanation=f"Titular {holder or '-'}: total {_brl(total)}",
        ))
    return alerts


def detect_round_values(transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Valores redondos: large amounts equal to a round value."""
    min_amount = _number(rule, "minAmount")
    raw_values = rule.parameters.get("roundValues")
    if not isinstance(raw_values, (list, tuple)) or not raw_values:
        raise DetectorError(rule.id, "parameter 'roundValues' must be a non-empty list")
    try:
        round_values = {Decimal(str(v)) for v in raw_values}
    except (InvalidOperation, ValueError):
        raise DetectorError(rule.id, f"parameter 'roundValues' must hold numbers, got {raw_values!r}") from None

    alerts: List[Alert] = []
    for tx in sort_transactions(transactions):
        if tx.amount < min_amount or tx.amount not in round_values:
            continue
        alerts.append(_make_alert(
            rule, case_id, [tx],
            score=Decimal(30),
            description=f"Valor redondo de {_brl(tx.amount)}",
            explanation=f"{tx.type.value} via {tx.method.value} em {tx.date.isoformat()}",
        ))
    return alerts


# Rule id -> detector. Rules without an entry are skipped by the engine.
DETECTORS: Dict[str, Detector] = {
    "fracionamento": detect_structuring,
    "circularidade": detect_circularity,
    "fan-in-out": detect_fan_in_out,
    "perfil-incompativel": detect_profile_drift,
    "especie-intensa": detect_cash_intensity,
    "transacao-atipica": detect_atypical_amount,
    "sequencia-ted": detect_wire_sequence,
    "valor-redondo": detect_round_values,
}
