from __future__ import annotations
from dataclasses import dataclass

# ====== App identity (used by API + reports) ======
APP_NAME: str = "RIFscan"
APP_VERSION: str = "1.0.0"

@dataclass
class Settings:
    # Rule engine
    parallel_detectors: bool = True
    max_workers: int = 4            # thread pool size (0 = one thread per rule)
    rules_file: str = ""            # override for the built-in rules.yaml
    # Metrics / reports
    top_counterparties: int = 10
    report_max_alerts: int = 20
    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
