"""Red-flag analysis module for RIFscan.

Provides:
- Typed source rows and transaction normalization
- Per-case ledger with merge-by-id semantics
- Rule-based detectors (structuring, circularity, fan-in/out, profile drift,
  cash intensity, atypical amounts, same-day wires, round values)
- Parallel rule engine with per-rule failure isolation
- Portfolio metrics and report context for the external report writer
- Case stores (in-memory and SQLite)
"""
