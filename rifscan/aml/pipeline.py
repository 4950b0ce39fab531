"""Red-flag analysis pipeline: end-to-end orchestration.

ingest:   raw rows -> typed source rows -> normalize -> ledger merge -> store
analyze:  ledger snapshot + case rules -> detectors -> alert replacement
read:     metrics, rules, report context

Every entry point takes the case store explicitly; get_default_store()
gives the SQLite store used by the web app.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..settings import Settings
from ..settings_store import load_settings
from . import rules as rules_mod
from .alerts import replace_alerts, summarize_alerts
from .engine import run_rules
from .llm_analysis import build_report_context
from .metrics import Metrics, MetricsFilter, compute_metrics
from .model import Alert, Rule
from .normalize import normalize_rows
from .sources import coerce_rows, report_text_rows
from .store import CaseStore, SqliteCaseStore

log = logging.getLogger("rifscan.aml.pipeline")

LogCallback = Optional[Callable[[str], None]]

_default_store: Optional[CaseStore] = None


def get_default_store() -> CaseStore:
    global _default_store
    if _default_store is None:
        _default_store = SqliteCaseStore()
    return _default_store


def _logger(log_cb: LogCallback) -> Callable[[str], None]:
    def _log(msg: str):
        log.info(msg)
        if log_cb:
            try:
                log_cb(msg)
            except Exception as e:
                log.debug("log_cb failed: %s", e)
    return _log


@dataclass
class IngestReport:
    case_id: str
    source: str
    evidence_id: str = ""
    accepted: int = 0
    inserted: int = 0
    updated: int = 0
    dropped_rows: List[int] = field(default_factory=list)
    defaulted_rows: int = 0
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    ledger_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "source": self.source,
            "evidence_id": self.evidence_id,
            "accepted": self.accepted,
            "inserted": self.inserted,
            "updated": self.updated,
            "dropped": len(self.dropped_rows),
            "dropped_rows": list(self.dropped_rows),
            "defaulted_rows": self.defaulted_rows,
            "warnings": list(self.warnings),
            "ledger_size": self.ledger_size,
        }


@dataclass
class AnalysisReport:
    case_id: str
    alerts: List[Alert] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    transaction_count: int = 0
    defaulted_rows: int = 0
    duration_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "alerts": [a.to_dict() for a in self.alerts],
            "summary": summarize_alerts(self.alerts),
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "transaction_count": self.transaction_count,
            "defaulted_rows": self.defaulted_rows,
            "duration_s": self.duration_s,
        }


# ============================================================
# Ingestion
# ============================================================

def ingest_rows(
    case_id: str,
    rows: Any,
    source: str,
    evidence_id: str = "",
    store: Optional[CaseStore] = None,
    log_cb: LogCallback = None,
) -> IngestReport:
    """Normalize rows of one source file and merge them into the case ledger.

    Raises IngestionError for an unsupported source (nothing is written) and
    PersistenceError when the store fails.
    """
    store = store or get_default_store()
    _log = _logger(log_cb)

    typed = coerce_rows(source, rows)
    _log(f"Case {case_id}: {len(typed)} {source} rows from {evidence_id or '-'}")

    result = normalize_rows(typed, case_id, evidence_id)

    with store.case_lock(case_id):
        ledger = store.get_ledger(case_id)
        counts = ledger.merge(result.transactions)
        store.put_ledger(case_id, ledger)
        store.record(case_id, "ingest", {
            "source": source,
            "evidence_id": evidence_id,
            "accepted": len(result.transactions),
            "dropped": len(result.dropped_rows),
        })

    _log(
        f"Case {case_id}: {counts['inserted']} new, {counts['updated']} updated, "
        f"{len(result.dropped_rows)} dropped, {result.defaulted_rows} with defaults"
    )
    return IngestReport(
        case_id=case_id,
        source=source,
        evidence_id=evidence_id,
        accepted=len(result.transactions),
        inserted=counts["inserted"],
        updated=counts["updated"],
        dropped_rows=list(result.dropped_rows),
        defaulted_rows=result.defaulted_rows,
        warnings=[w.to_dict() for w in result.warnings],
        ledger_size=len(ledger),
    )


def ingest_report_text(
    case_id: str,
    text: str,
    evidence_id: str = "",
    store: Optional[CaseStore] = None,
    log_cb: LogCallback = None,
) -> IngestReport:
    """Ingest a RIF report already extracted to text."""
    return ingest_rows(case_id, report_text_rows(text), "report", evidence_id, store, log_cb)


# ============================================================
# Rules
# ============================================================

def case_rules(case_id: str, store: Optional[CaseStore] = None, settings: Optional[Settings] = None) -> List[Rule]:
    """Rules of a case; defaults are stored on first use."""
    store = store or get_default_store()
    settings = settings or load_settings()
    with store.case_lock(case_id):
        stored = store.get_rules(case_id)
        defaults = rules_mod.load_default_rules(settings.rules_file or None)
        rules = rules_mod.rules_for_case(stored, defaults)
        if stored is None or len(stored) != len(rules):
            store.put_rules(case_id, rules)
    return rules


def update_rule(
    case_id: str,
    rule_id: str,
    changes: Dict[str, Any],
    store: Optional[CaseStore] = None,
) -> Rule:
    """Change one rule of a case. KeyError: unknown rule, ValueError: bad value."""
    store = store or get_default_store()
    rules = case_rules(case_id, store)
    with store.case_lock(case_id):
        updated = rules_mod.update_rule(rules, rule_id, changes)
        store.put_rules(case_id, updated)
        store.record(case_id, "rule_update", {"rule_id": rule_id, "changes": changes})
    return next(r for r in updated if r.id == rule_id)


# ============================================================
# Analysis
# ============================================================

def run_analysis(
    case_id: str,
    store: Optional[CaseStore] = None,
    parallel: Optional[bool] = None,
    max_workers: Optional[int] = None,
    log_cb: LogCallback = None,
) -> AnalysisReport:
    """Run all enabled rules over the case ledger and replace its alerts.

    Detector failures are reported in the result, not raised. Only
    PersistenceError escapes, and then the previous alert set is kept.
    """
    store = store or get_default_store()
    settings = load_settings()
    _log = _logger(log_cb)
    t0 = time.time()

    if parallel is None:
        parallel = settings.parallel_detectors
    if max_workers is None:
        max_workers = settings.max_workers or None

    rules = case_rules(case_id, store, settings)
    with store.case_lock(case_id):
        ledger = store.get_ledger(case_id)
    snapshot = ledger.snapshot()
    _log(f"Case {case_id}: analysing {len(snapshot)} transactions with {len(rules)} rules")

    outcome = run_rules(snapshot, rules, case_id, parallel=parallel, max_workers=max_workers)
    for rule_id, message in outcome.failed.items():
        _log(f"Rule {rule_id} failed: {message}")

    replace_alerts(store, case_id, outcome.alerts)
    store.record(case_id, "analysis", {
        "alerts": len(outcome.alerts),
        "succeeded": outcome.succeeded,
        "failed": sorted(outcome.failed),
    })

    report = AnalysisReport(
        case_id=case_id,
        alerts=outcome.alerts,
        succeeded=outcome.succeeded,
        failed=outcome.failed,
        skipped=outcome.skipped,
        transaction_count=len(snapshot),
        defaulted_rows=ledger.defaulted_count(),
        duration_s=round(time.time() - t0, 3),
    )
    _log(f"Case {case_id}: {len(report.alerts)} alerts in {report.duration_s}s")
    return report


def case_alerts(case_id: str, store: Optional[CaseStore] = None) -> List[Alert]:
    store = store or get_default_store()
    return store.get_alerts(case_id)


def case_metrics(
    case_id: str,
    store: Optional[CaseStore] = None,
    filters: Optional[MetricsFilter] = None,
    top_n: Optional[int] = None,
) -> Metrics:
    store = store or get_default_store()
    if top_n is None:
        top_n = load_settings().top_counterparties
    ledger = store.get_ledger(case_id)
    return compute_metrics(ledger.snapshot(), filters, top_n=top_n)


def report_context(case_id: str, store: Optional[CaseStore] = None) -> str:
    """Plain-text case summary for the external report writer."""
    store = store or get_default_store()
    settings = load_settings()
    case = store.get_case(case_id) or {}
    metrics = compute_metrics(store.get_ledger(case_id).snapshot(), top_n=settings.top_counterparties)
    return build_report_context(
        case_id,
        metrics,
        store.get_alerts(case_id),
        max_alerts=settings.report_max_alerts,
        case_name=case.get("name"),
    )
