from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI

from rifscan.db.engine import get_system_config
from rifscan.settings import APP_NAME, APP_VERSION
from rifscan.settings_store import load_settings

from .routers.cases import router as cases_router

log = logging.getLogger("rifscan.api")

app = FastAPI(title=f"{APP_NAME} API", version=APP_VERSION)
app.include_router(cases_router)


@app.get("/api/health")
def api_health() -> Any:
    return {
        "status": "ok",
        "app": APP_NAME,
        "version": APP_VERSION,
        "db_version": get_system_config("db_version", ""),
    }


# ---------- API: settings ----------

@app.get("/api/settings")
def api_get_settings() -> Any:
    s = load_settings()
    return {
        "parallel_detectors": s.parallel_detectors,
        "max_workers": s.max_workers,
        "top_counterparties": s.top_counterparties,
        "report_max_alerts": s.report_max_alerts,
    }
