from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path

from .settings import Settings

log = logging.getLogger("rifscan.settings")

APP_DIRNAME = "rifscan"
FILENAME = "settings.json"


def _config_dir() -> Path:
    """RIFSCAN_CONFIG_DIR if set, else rifscan/.rifscan/ next to the sources."""
    env_dir = (os.environ.get("RIFSCAN_CONFIG_DIR") or "").strip()
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path(__file__).resolve().parent / f".{APP_DIRNAME}"


def _config_path() -> Path:
    cfg_dir = _config_dir()
    cfg_dir.mkdir(parents=True, exist_ok=True)
    return cfg_dir / FILENAME


def _read_settings_file(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        # corrupt file: fall back to defaults
        log.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_settings() -> Settings:
    """Load settings from the config dir, unknown keys ignored, defaults otherwise."""
    data = _read_settings_file(_config_path())
    s = Settings()
    for k, v in data.items():
        if hasattr(s, k):
            setattr(s, k, v)
    return s


def save_settings(settings: Settings) -> None:
    path = _config_path()
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(asdict(settings), indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)
