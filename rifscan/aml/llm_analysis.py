"""Report context for the external narrative writer.

Builds a plain-text summary (metrics, alerts, top counterparties) that is
handed to a language model elsewhere. Nothing here calls the model and the
engine never depends on its output.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .alerts import summarize_alerts
from .metrics import Metrics
from .model import Alert

log = logging.getLogger("rifscan.aml.llm_analysis")


def _brl(value) -> str:
    return f"R$ {value:,.2f}"


def build_report_context(
    case_id: str,
    metrics: Metrics,
    alerts: Sequence[Alert],
    max_alerts: int = 20,
    case_name: Optional[str] = None,
) -> str:
    """Build the analysis context text for one case.

    Args:
        case_id: Case being reported
        metrics: Unfiltered case metrics
        alerts: Current alert set (rule order)
        max_alerts: Alerts listed individually (highest score first)
        case_name: Display name, defaults to the id

    Returns the context as a single string.
    """
    parts: List[str] = [
        f"# CONTEXTO: Análise de RIF - caso {case_name or case_id}\n\n"
        "Você é um analista de inteligência financeira. Redija um relatório "
        "objetivo com base exclusivamente nos dados abaixo, citando valores, "
        "contrapartes e alertas."
    ]
    parts.append(_build_metrics_section(metrics))
    parts.append(_build_counterparty_section(metrics))
    parts.append(_build_alert_section(alerts, max_alerts))
    return "\n\n".join(p for p in parts if p)


def _build_metrics_section(m: Metrics) -> str:
    lines = [
        "## MÉTRICAS",
        f"- Transações: {m.transaction_count}",
        f"- Total de créditos: {_brl(m.total_credits)}",
        f"- Total de débitos: {_brl(m.total_debits)}",
        f"- Saldo: {_brl(m.balance)}",
        f"- Ticket médio: {_brl(m.average_ticket)}",
    ]
    if m.period_series:
        lines.append(f"- Período: {m.period_series[0]['date']} a {m.period_series[-1]['date']}")
    if m.method_distribution:
        methods = ", ".join(
            f"{d['method']} {_brl(d['amount'])} ({d['count']})" for d in m.method_distribution
        )
        lines.append(f"- Meios: {methods}")
    return "\n".join(lines)


def _build_counterparty_section(m: Metrics) -> str:
    if not m.top_counterparties:
        return ""
    lines = [f"## PRINCIPAIS CONTRAPARTES ({len(m.top_counterparties)})"]
    for i, cp in enumerate(m.top_counterparties, 1):
        doc = f" [{cp['document']}]" if cp.get("document") else ""
        lines.append(f"{i}. {cp['name']}{doc}: {_brl(cp['amount'])} em {cp['count']} transações")
    return "\n".join(lines)


def _build_alert_section(alerts: Sequence[Alert], max_alerts: int) -> str:
    if not alerts:
        return "## ALERTAS\n\nNenhum alerta gerado."
    summary = summarize_alerts(alerts)
    sev = summary["by_severity"]
    lines = [
        f"## ALERTAS ({summary['total']})",
        f"Alta: {sev['high']} | Média: {sev['medium']} | Baixa: {sev['low']}",
    ]
    ranked = sorted(alerts, key=lambda a: (-a.score, a.id))[:max_alerts]
    for a in ranked:
        lines.append(
            f"- [{a.severity.upper()}] {a.rule_id} (score {a.score:.2f}, "
            f"{a.evidence_count} transações): {a.description}"
        )
    if len(alerts) > len(ranked):
        lines.append(f"... e mais {len(alerts) - len(ranked)} alertas")
    return "\n".join(lines)
