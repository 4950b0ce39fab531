"""Case API router for RIFscan.

Endpoints:
- POST  /api/cases                               create case
- GET   /api/cases                               list cases
- POST  /api/cases/{case_id}/ingest              ingest decoded rows of one file
- POST  /api/cases/{case_id}/analyze             run all enabled rules
- GET   /api/cases/{case_id}/alerts              current alert set
- GET   /api/cases/{case_id}/metrics             portfolio metrics (filterable)
- GET   /api/cases/{case_id}/rules               case rule configuration
- PATCH /api/cases/{case_id}/rules/{rule_id}     toggle / retune one rule
- GET   /api/cases/{case_id}/report-context      text summary for the report writer
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from rifscan.aml import pipeline
from rifscan.aml.alerts import filter_alerts, summarize_alerts
from rifscan.aml.errors import IngestionError, PersistenceError
from rifscan.aml.metrics import MetricsFilter, parse_time_range
from rifscan.aml.model import Method
from rifscan.aml.normalize import parse_date
from rifscan.aml.sources import source_for_filename

log = logging.getLogger("rifscan.api.cases")

router = APIRouter()


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"status": "error", "error": message}, status_code=status_code)


def _store_error(e: PersistenceError) -> JSONResponse:
    log.error("Case store unavailable: %s", e)
    return _error(str(e), 503)


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


# ============================================================
# CASES
# ============================================================

@router.post("/api/cases")
async def cases_create(request: Request):
    data = await _json_body(request)
    if not isinstance(data, dict):
        return _error("JSON object expected", 400)
    store = pipeline.get_default_store()
    try:
        case = await run_in_threadpool(
            store.create_case,
            str(data.get("name") or "Novo caso"),
            str(data.get("description") or ""),
        )
    except PersistenceError as e:
        return _store_error(e)
    return JSONResponse({"status": "ok", "case": case})


@router.get("/api/cases")
async def cases_list():
    store = pipeline.get_default_store()
    try:
        cases = await run_in_threadpool(store.list_cases)
    except PersistenceError as e:
        return _store_error(e)
    return JSONResponse({"cases": cases})


# ============================================================
# INGEST / ANALYZE
# ============================================================

@router.post("/api/cases/{case_id}/ingest")
async def case_ingest(case_id: str, request: Request):
    """Ingest one decoded file.

    Body: {"source": "delimited|spreadsheet|report|json", "rows": [...]}
    or {"filename": "rif.csv", "rows": [...]} (source from the extension)
    or {"source": "report", "text": "..."} for extracted report text.
    Optional "evidence_id" (defaults to filename).
    """
    data = await _json_body(request)
    if not isinstance(data, dict):
        return _error("JSON object expected", 400)

    filename = str(data.get("filename") or "")
    evidence_id = str(data.get("evidence_id") or filename)
    try:
        source = str(data.get("source") or "") or source_for_filename(filename)
        if "text" in data and "rows" not in data:
            if source != "report":
                raise IngestionError("text payloads are only supported for report sources")
            report = await run_in_threadpool(
                pipeline.ingest_report_text, case_id, str(data["text"]), evidence_id,
            )
        else:
            report = await run_in_threadpool(
                pipeline.ingest_rows, case_id, data.get("rows"), source, evidence_id,
            )
    except IngestionError as e:
        log.warning("Ingestion rejected for case %s: %s", case_id, e)
        return _error(str(e), 400)
    except PersistenceError as e:
        return _store_error(e)
    return JSONResponse({"status": "ok", "report": report.to_dict()})


@router.post("/api/cases/{case_id}/analyze")
async def case_analyze(case_id: str, request: Request):
    """Run all enabled rules. Body (optional): {"parallel": bool}."""
    data = await _json_body(request) or {}
    parallel = data.get("parallel") if isinstance(data, dict) else None
    try:
        report = await run_in_threadpool(
            pipeline.run_analysis, case_id, None, parallel if isinstance(parallel, bool) else None,
        )
    except PersistenceError as e:
        return _store_error(e)
    return JSONResponse({"status": "ok", "analysis": report.to_dict()})


# ============================================================
# READ MODELS
# ============================================================

@router.get("/api/cases/{case_id}/alerts")
async def case_alerts(case_id: str, severity: str = Query(""), rule_id: str = Query("")):
    try:
        alerts = await run_in_threadpool(pipeline.case_alerts, case_id)
    except PersistenceError as e:
        return _store_error(e)
    selected = filter_alerts(alerts, severity=severity, rule_id=rule_id)
    return JSONResponse({
        "alerts": [a.to_dict() for a in selected],
        "summary": summarize_alerts(alerts),
    })


@router.get("/api/cases/{case_id}/metrics")
async def case_metrics(
    case_id: str,
    start: str = Query(""),
    end: str = Query(""),
    time_range: str = Query(""),
    min_amount: str = Query(""),
    method: str = Query(""),
    counterparty: str = Query(""),
    top_n: int = Query(0),
):
    filters = MetricsFilter(counterparty=counterparty or None, time_range=time_range or None)
    try:
        parse_time_range(filters.time_range)
        if start:
            filters.start = parse_date(start)
            if filters.start is None:
                raise ValueError(f"Invalid start date: {start!r}")
        if end:
            filters.end = parse_date(end)
            if filters.end is None:
                raise ValueError(f"Invalid end date: {end!r}")
        if min_amount:
            try:
                filters.min_amount = Decimal(min_amount)
            except InvalidOperation:
                raise ValueError(f"Invalid min_amount: {min_amount!r}") from None
            if not filters.min_amount.is_finite():
                raise ValueError(f"Invalid min_amount: {min_amount!r}")
        if method:
            filters.method = Method(method)
        if top_n < 0:
            raise ValueError(f"Invalid top_n: {top_n}")
    except ValueError as e:
        return _error(str(e), 400)

    try:
        metrics = await run_in_threadpool(
            pipeline.case_metrics, case_id, None, filters, top_n or None,
        )
    except PersistenceError as e:
        return _store_error(e)
    return JSONResponse({"metrics": metrics.to_dict()})


@router.get("/api/cases/{case_id}/rules")
async def case_rules(case_id: str):
    try:
        rules = await run_in_threadpool(pipeline.case_rules, case_id)
    except PersistenceError as e:
        return _store_error(e)
    return JSONResponse({"rules": [r.to_dict() for r in rules]})


@router.patch("/api/cases/{case_id}/rules/{rule_id}")
async def case_rule_update(case_id: str, rule_id: str, request: Request):
    """Body: any of {"enabled": bool, "severity": str, "parameters": {...}}."""
    data = await _json_body(request)
    if not isinstance(data, dict):
        return _error("JSON object expected", 400)
    try:
        rule = await run_in_threadpool(pipeline.update_rule, case_id, rule_id, data)
    except KeyError:
        return _error(f"Unknown rule: {rule_id}", 404)
    except ValueError as e:
        return _error(str(e), 400)
    except PersistenceError as e:
        return _store_error(e)
    return JSONResponse({"status": "ok", "rule": rule.to_dict()})


@router.get("/api/cases/{case_id}/report-context")
async def case_report_context(case_id: str):
    try:
        text = await run_in_threadpool(pipeline.report_context, case_id)
    except PersistenceError as e:
        return _store_error(e)
    return PlainTextResponse(text)
