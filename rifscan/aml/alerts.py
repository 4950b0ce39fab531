"""Alert aggregation: the current alert set of a case."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List

from .model import SEVERITIES, Alert
from .store import CaseStore

log = logging.getLogger("rifscan.aml.alerts")


def replace_alerts(store: CaseStore, case_id: str, alerts: Iterable[Alert]) -> List[Alert]:
    """Replace the stored alert set of a case with a new run's output.

    The previous set survives untouched if the store write fails.
    """
    alerts = list(alerts)
    for alert in alerts:
        if alert.case_id != case_id:
            raise ValueError(f"alert {alert.id} belongs to case {alert.case_id}, not {case_id}")
    with store.case_lock(case_id):
        store.put_alerts(case_id, alerts)
    log.info("Case %s: stored %d alerts", case_id, len(alerts))
    return alerts


def summarize_alerts(alerts: Iterable[Alert]) -> Dict[str, Any]:
    """Counts by severity and by rule, plus the highest score."""
    alerts = list(alerts)
    by_severity = Counter(a.severity for a in alerts)
    by_rule = Counter(a.rule_id for a in alerts)
    return {
        "total": len(alerts),
        "by_severity": {s: by_severity.get(s, 0) for s in SEVERITIES},
        "by_rule": dict(sorted(by_rule.items())),
        "max_score": max((a.score for a in alerts), default=0.0),
    }


def filter_alerts(alerts: Iterable[Alert], severity: str = "", rule_id: str = "") -> List[Alert]:
    return [
        a for a in alerts
        if (not severity or a.severity == severity) and (not rule_id or a.rule_id == rule_id)
    ]
