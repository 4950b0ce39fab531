"""Red-flag rule configuration.

Built-in defaults come from config/rules.yaml. Nothing is cached at module
level: every case gets its own rule list, loaded once and then stored in the
case store together with any overrides.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .model import SEVERITIES, Rule

log = logging.getLogger("rifscan.aml.rules")

_RULES_DIR = Path(__file__).parent / "config"
DEFAULT_RULES_FILE = _RULES_DIR / "rules.yaml"


def _load_yaml(path: Path) -> Dict[str, Any]:
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}


def load_default_rules(config_path: Optional[Path] = None) -> List[Rule]:
    """Load the built-in rule set (file order is rule order)."""
    path = Path(config_path) if config_path else DEFAULT_RULES_FILE
    if not path.exists():
        log.warning("Rules config not found: %s, falling back to %s", path, DEFAULT_RULES_FILE)
        path = DEFAULT_RULES_FILE

    data = _load_yaml(path)
    rules: List[Rule] = []
    for rule_id, body in (data.get("rules") or {}).items():
        body = body or {}
        rules.append(Rule(
            id=str(rule_id),
            enabled=bool(body.get("enabled", True)),
            severity=str(body.get("severity", "medium")),
            parameters=dict(body.get("parameters") or {}),
            label=str(body.get("label", "")),
            description=str(body.get("description", "")),
        ))
    log.info("Loaded %d rules from %s", len(rules), path)
    return rules


def rules_for_case(stored: Optional[Iterable[Rule]], defaults: Iterable[Rule]) -> List[Rule]:
    """Stored per-case rules first, then any default the case does not have yet.

    Parameters missing from a stored rule are filled from the default.
    """
    defaults = list(defaults)
    if not stored:
        return [copy.deepcopy(r) for r in defaults]

    by_default = {r.id: r for r in defaults}
    out: List[Rule] = []
    seen = set()
    for rule in stored:
        base = by_default.get(rule.id)
        if base is not None:
            params = dict(base.parameters)
            params.update(rule.parameters)
            rule = Rule(
                id=rule.id,
                enabled=rule.enabled,
                severity=rule.severity,
                parameters=params,
                label=rule.label or base.label,
                description=rule.description or base.description,
            )
        out.append(rule)
        seen.add(rule.id)

    for rule in defaults:
        if rule.id not in seen:
            out.append(copy.deepcopy(rule))
    return out


def update_rule(rules: List[Rule], rule_id: str, changes: Dict[str, Any]) -> List[Rule]:
    """Return a new rule list with one rule changed.

    Accepted keys: enabled, severity, parameters (merged into the existing
    parameters). Raises KeyError for an unknown rule id and ValueError for
    invalid values.
    """
    unknown = set(changes) - {"enabled", "severity", "parameters"}
    if unknown:
        raise ValueError(f"Unsupported rule fields: {', '.join(sorted(unknown))}")

    out: List[Rule] = []
    found = False
    for rule in rules:
        if rule.id != rule_id:
            out.append(rule)
            continue
        found = True

        enabled = rule.enabled
        if "enabled" in changes:
            if not isinstance(changes["enabled"], bool):
                raise ValueError("enabled must be true or false")
            enabled = changes["enabled"]

        severity = changes.get("severity", rule.severity)
        if severity not in SEVERITIES:
            raise ValueError(f"severity must be one of {', '.join(SEVERITIES)}")

        params = dict(rule.parameters)
        if "parameters" in changes:
            if not isinstance(changes["parameters"], dict):
                raise ValueError("parameters must be an object")
            params.update(changes["parameters"])

        out.append(Rule(
            id=rule.id,
            enabled=enabled,
            severity=severity,
            parameters=params,
            label=rule.label,
            description=rule.description,
        ))

    if not found:
        raise KeyError(rule_id)
    log.info("Rule %s updated: %s", rule_id, sorted(changes))
    return out
