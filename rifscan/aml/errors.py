"""Error taxonomy for the red-flag engine.

Propagation policy:
- row-level problems are recorded as NormalizationWarning and never abort a file
- detector problems are wrapped in DetectorError and never abort an analysis
- only IngestionError (per file) and PersistenceError are terminal
"""

from __future__ import annotations

from typing import Optional


class RifscanError(Exception):
    """Base class for all engine errors."""


class IngestionError(RifscanError):
    """Unsupported source format. Aborts ingestion of that file only."""


class DetectorError(RifscanError):
    """A single rule failed (bad parameters or internal error)."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"{rule_id}: {message}")
        self.rule_id = rule_id
        self.message = message


class PersistenceError(RifscanError):
    """Case store unavailable or write failed. No partial writes happen."""


class NormalizationWarning(UserWarning):
    """A row field was replaced by its default during normalization.

    Collected into the ingestion report, never raised.
    """

    def __init__(self, row_index: int, field: str, raw: Optional[str] = None, default: str = ""):
        super().__init__(f"row {row_index}: {field}={raw!r} -> {default!r}")
        self.row_index = row_index
        self.field = field
        self.raw = raw
        self.default = default

    def to_dict(self):
        return {
            "row": self.row_index,
            "field": self.field,
            "raw": self.raw,
            "default": self.default,
        }
