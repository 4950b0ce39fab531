#!/usr/bin/env python3
from __future__ import annotations

import logging
import os


def main() -> None:
    import uvicorn

    from rifscan.settings_store import load_settings

    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, str(settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.environ.get("RIFSCAN_HOST") or settings.host
    port = int(os.environ.get("RIFSCAN_PORT") or settings.port)
    uvicorn.run("webapp.server:app", host=host, port=port)


if __name__ == "__main__":
    main()
