"""Rule engine: runs the enabled detectors over one ledger snapshot.

A failing detector is logged and reported; the other rules still run.
Alerts are collected in rule order whether detectors ran sequentially or
on a thread pool, so both modes produce identical results.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .detectors import DETECTORS, Detector
from .errors import DetectorError
from .model import Alert, Rule, Transaction, sort_transactions

log = logging.getLogger("rifscan.aml.engine")


@dataclass
class RuleRunResult:
    alerts: List[Alert] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)    # rule id -> message
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alerts": [a.to_dict() for a in self.alerts],
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
        }


def run_detector(detector: Detector, transactions: Sequence[Transaction], rule: Rule, case_id: str) -> List[Alert]:
    """Run one detector, wrapping any failure into DetectorError."""
    try:
        return list(detector(transactions, rule, case_id))
    except DetectorError:
        raise
    except Exception as e:
        raise DetectorError(rule.id, f"{type(e).__name__}: {e}") from e


def run_rules(
    transactions: Sequence[Transaction],
    rules: Sequence[Rule],
    case_id: str,
    parallel: bool = False,
    max_workers: Optional[int] = None,
    detectors: Optional[Dict[str, Detector]] = None,
) -> RuleRunResult:
    """Run every enabled rule that has a detector.

    Args:
        transactions: Case ledger (sorted here once, then shared read-only)
        rules: Case rule list; its order is the alert order
        case_id: Owning case
        parallel: Run detectors on a thread pool
        max_workers: Pool size (default: number of runnable rules)
        detectors: Rule id -> detector registry (default: DETECTORS)

    Returns:
        RuleRunResult with alerts and succeeded/failed/skipped rule ids.
    """
    registry = DETECTORS if detectors is None else detectors
    snapshot = tuple(sort_transactions(transactions))
    result = RuleRunResult()

    runnable: List[Rule] = []
    for rule in rules:
        if not rule.enabled or rule.id not in registry:
            if rule.enabled:
                log.warning("No detector registered for rule %s", rule.id)
            result.skipped.append(rule.id)
            continue
        runnable.append(rule)

    outcomes: Dict[str, Any] = {}

    def _run(rule: Rule):
        try:
            return run_detector(registry[rule.id], snapshot, rule, case_id)
        except DetectorError as e:
            return e

    if parallel and len(runnable) > 1:
        workers = max_workers or len(runnable)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rifscan-rule") as pool:
            futures = {rule.id: pool.submit(_run, rule) for rule in runnable}
            for rule_id, future in futures.items():
                outcomes[rule_id] = future.result()
    else:
        for rule in runnable:
            outcomes[rule.id] = _run(rule)

    for rule in runnable:
        outcome = outcomes[rule.id]
        if isinstance(outcome, DetectorError):
            log.error("Rule %s failed for case %s: %s", rule.id, case_id, outcome.message)
            result.failed[rule.id] = outcome.message
            continue
        result.succeeded.append(rule.id)
        result.alerts.extend(outcome)

    log.info(
        "Case %s: %d alerts from %d rules (%d failed, %d skipped)",
        case_id, len(result.alerts), len(result.succeeded), len(result.failed), len(result.skipped),
    )
    return result
