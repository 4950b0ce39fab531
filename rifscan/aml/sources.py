"""Source row shapes.

Decoders (CSV readers, spreadsheet readers, report text extractors) hand over
loosely typed rows. coerce_rows() turns them into one of four typed shapes
right at the boundary; nothing past this module deals with untyped input.

Each shape exposes to_fields(), which returns the raw (still unparsed)
field values in a common layout consumed by normalize.py.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import IngestionError

log = logging.getLogger("rifscan.aml.sources")


def _fold(text: Any) -> str:
    s = unicodedata.normalize("NFKD", str(text or ""))
    s = "".join(c for c in s if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", s).strip().lower()


@dataclass
class RowFields:
    """Raw field values pulled out of one source row."""

    date: Any = None
    amount: Any = None
    type: Any = None
    method: Any = None
    holder_document: Any = None
    counterparty_document: Any = None
    counterparty: Any = None
    bank: Any = None
    agency: Any = None
    account: Any = None
    description: Any = None
    id: Any = None
    evidence_id: Any = None


_FIELD_NAMES = tuple(RowFields.__dataclass_fields__)


# ============================================================
# Delimited text (CSV / TXT)
# ============================================================

# Header -> field, first match wins. Documents before names.
_HEADER_PATTERNS: Tuple[Tuple[str, "re.Pattern"], ...] = (
    ("id", re.compile(r"^id$|^tx_?id$")),
    ("counterparty_document", re.compile(
        r"(doc|cpf|cnpj).*(contraparte|counterparty|benefici)"
        r"|(contraparte|counterparty|benefici).*(doc|cpf|cnpj)|^documento$")),
    ("holder_document", re.compile(r"(doc|cpf|cnpj).*(titular|holder)|(titular|holder).*(doc|cpf|cnpj)")),
    ("date", re.compile(r"data|date")),
    ("type", re.compile(r"tipo|type|natureza")),
    ("amount", re.compile(r"valor|amount|quantia")),
    ("counterparty", re.compile(r"contraparte|counterparty|benefici")),
    ("description", re.compile(r"descri|historico|memo")),
    ("method", re.compile(r"metodo|method|forma|modalidade|canal|channel")),
    ("bank", re.compile(r"banco|bank")),
    ("agency", re.compile(r"agencia|agency")),
    ("account", re.compile(r"conta|account")),
)

# TXT exports: date;amount;type;counterparty;description;method;bank;agency;account
POSITIONAL_COLUMNS = (
    "date", "amount", "type", "counterparty", "description",
    "method", "bank", "agency", "account",
)

# Pipe-delimited exports: DATA|TIPO|VALOR|CONTRAPARTE|DOCUMENTO|DESCRICAO|METODO
PIPE_COLUMNS = (
    "date", "type", "amount", "counterparty", "counterparty_document",
    "description", "method",
)


def match_header(header: Any) -> Optional[str]:
    """Canonical field for a column header, None when unknown."""
    key = _fold(header)
    if not key:
        return None
    for name, pattern in _HEADER_PATTERNS:
        if pattern.search(key):
            return name
    return None


@dataclass
class DelimitedRow:
    kind = "delimited"

    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "DelimitedRow":
        """Header mapping, positional list, or one raw line (';' or '|')."""
        if isinstance(raw, Mapping):
            values: Dict[str, Any] = {}
            for header, value in raw.items():
                name = match_header(header)
                if name and name not in values:
                    values[name] = value
            return cls(values)

        if isinstance(raw, str):
            if "|" in raw:
                parts = [p.strip() for p in raw.split("|")]
                return cls(dict(zip(PIPE_COLUMNS, parts)))
            raw = [p.strip() for p in raw.split(";")]

        if isinstance(raw, (list, tuple)):
            return cls(dict(zip(POSITIONAL_COLUMNS, raw)))

        return cls()

    def to_fields(self) -> RowFields:
        return RowFields(**{k: v for k, v in self.values.items() if k in _FIELD_NAMES})


# ============================================================
# RIF spreadsheet entity lists
# ============================================================

_EMPTY_MARKERS = {"", "preencher manualmente", "-", "n/a"}
_DATE_IN_TEXT = re.compile(r"\d{2}/\d{2}/\d{4}|\d{4}-\d{2}-\d{2}")

# Folded header substring -> column. First match wins.
_SHEET_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("remetente ou beneficiario", "relation"),
    ("remetente/beneficiario cpf", "counterparty_document"),
    ("remetente/beneficiario nome", "counterparty"),
    ("titular cpf", "holder_document"),
    ("titular nome", "holder_name"),
    ("data/periodo", "date"),
    ("observac", "notes"),
    ("indexador", "indexer"),
    ("responsavel", "responsible"),
    ("ordem", "order"),
    ("valor", "amount"),
    ("tipo", "relation"),
    ("rif", "rif"),
)


def _sheet_column(header: Any) -> Optional[str]:
    key = _fold(header)
    for needle, name in _SHEET_COLUMNS:
        if needle in key:
            return name
    return None


@dataclass
class SpreadsheetEntityRow:
    kind = "spreadsheet"

    cells: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "SpreadsheetEntityRow":
        cells: Dict[str, Any] = {}
        if isinstance(raw, Mapping):
            for header, value in raw.items():
                name = _sheet_column(header)
                if name and name not in cells:
                    cells[name] = value
        return cls(cells)

    def _cell(self, name: str) -> Any:
        value = self.cells.get(name)
        if value is None:
            return None
        if isinstance(value, str) and _fold(value) in _EMPTY_MARKERS:
            return None
        return value

    def to_fields(self) -> RowFields:
        relation = _fold(self._cell("relation"))
        if "remetente" in relation:
            tx_type: Any = "credit"     # counterparty sent funds to the holder
        elif "benefici" in relation:
            tx_type = "debit"
        else:
            tx_type = self._cell("relation")

        date = self._cell("date")
        if isinstance(date, str):
            m = _DATE_IN_TEXT.search(date)
            date = m.group(0) if m else date

        description = " ".join(
            str(v) for v in (self._cell("rif"), self._cell("indexer"), self._cell("notes")) if v
        )
        return RowFields(
            date=date,
            amount=self._cell("amount"),
            type=tx_type,
            holder_document=self._cell("holder_document"),
            counterparty_document=self._cell("counterparty_document"),
            counterparty=self._cell("counterparty"),
            description=description,
        )


# ============================================================
# RIF report text
# ============================================================

_REPORT_LINE_RE = re.compile(
    r"^\s*-\s*([\d.,]+)%\s*\(R\$\s*([\d.,]+)\s*em\s*(\d+)\s*transa\w*\)\s*"
    r"(?:via|para)\s*(?:CPF|CNPJ)\s*([\d./-]+)\s*\(([^)]+)\)",
    re.I,
)
_REPORT_BANK_RE = re.compile(
    r"banco\s*(\d+)(?:\s*-\s*[^,]+)?,\s*ag[eê]ncia\s*(?:n[uú]mero\s*)?(\d+)"
    r"\s*e\s*conta\s*(?:n[uú]mero\s*)?([\d-]+)",
    re.I,
)


@dataclass
class ReportTextRow:
    kind = "report"

    section: str = ""               # "credit" | "debit"
    line: str = ""
    holder_document: str = ""
    period_start: str = ""

    @classmethod
    def from_raw(cls, raw: Any) -> "ReportTextRow":
        if isinstance(raw, str):
            return cls(line=raw)
        if not isinstance(raw, Mapping):
            return cls()
        return cls(
            section=str(raw.get("section") or ""),
            line=str(raw.get("line") or ""),
            holder_document=str(raw.get("holder_document") or ""),
            period_start=str(raw.get("period_start") or ""),
        )

    def to_fields(self) -> RowFields:
        fields = RowFields(
            date=self.period_start or None,
            type=self.section or None,
            holder_document=self.holder_document or None,
            description=self.line.strip().lstrip("-").strip(),
        )
        m = _REPORT_LINE_RE.match(self.line)
        if m:
            fields.amount = m.group(2)
            fields.counterparty_document = m.group(4)
            fields.counterparty = m.group(5).strip()
        b = _REPORT_BANK_RE.search(self.line)
        if b:
            fields.bank, fields.agency, fields.account = b.group(1), b.group(2), b.group(3)
        return fields


_CREDIT_HEADERS = ("creditos:", "outras contrapartes de credito")
_DEBIT_HEADERS = ("debitos:", "outras contrapartes de debito")
_OTHER_HEADERS = ("envolvidos:", "informacoes basicas", "comunicacao")


def report_text_rows(text: str) -> List[Dict[str, str]]:
    """Split RIF report text into raw ReportTextRow mappings.

    The holder comes from the "Titular(es):" line, the date from the start
    of the "Período:" line. Only "- ..." lines inside the CRÉDITOS/DÉBITOS
    sections become rows.
    """
    holder = ""
    period_start = ""
    section = ""
    rows: List[Dict[str, str]] = []

    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        folded = _fold(line)

        if folded.startswith("titular"):
            digits = re.search(r"[\d./-]{11,18}", line)
            if digits and not holder:
                holder = digits.group(0)
            continue
        if folded.startswith("periodo"):
            m = _DATE_IN_TEXT.search(line)
            if m and not period_start:
                period_start = m.group(0)
            continue
        if folded.startswith(_CREDIT_HEADERS):
            section = "credit"
            continue
        if folded.startswith(_DEBIT_HEADERS):
            section = "debit"
            continue
        if folded.startswith(_OTHER_HEADERS):
            section = ""
            continue

        if section and line.startswith("-"):
            rows.append({
                "section": section,
                "line": line,
                "holder_document": holder,
                "period_start": period_start,
            })

    return rows


# ============================================================
# Generic key/value JSON
# ============================================================

_JSON_KEYS = {
    "id": "id",
    "txid": "id",
    "date": "date",
    "data": "date",
    "amount": "amount",
    "valor": "amount",
    "type": "type",
    "tipo": "type",
    "method": "method",
    "metodo": "method",
    "channel": "method",
    "holderdocument": "holder_document",
    "counterpartydocument": "counterparty_document",
    "counterparty": "counterparty",
    "contraparte": "counterparty",
    "bank": "bank",
    "agency": "agency",
    "account": "account",
    "description": "description",
    "descricao": "description",
    "evidenceid": "evidence_id",
}


@dataclass
class JsonRow:
    kind = "json"

    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "JsonRow":
        if not isinstance(raw, Mapping):
            return cls()
        data: Dict[str, Any] = {}
        for key, value in raw.items():
            name = _JSON_KEYS.get(_fold(key).replace("_", "").replace("-", ""))
            if name and name not in data:
                data[name] = value
        return cls(data)

    def to_fields(self) -> RowFields:
        return RowFields(**self.data)


# ============================================================
# Boundary
# ============================================================

SourceRow = Union[DelimitedRow, SpreadsheetEntityRow, ReportTextRow, JsonRow]

SOURCES = {
    "delimited": DelimitedRow,
    "spreadsheet": SpreadsheetEntityRow,
    "report": ReportTextRow,
    "json": JsonRow,
}

_EXTENSIONS = {
    "txt": "delimited",
    "csv": "delimited",
    "xlsx": "spreadsheet",
    "xls": "spreadsheet",
    "json": "json",
    "rif": "report",
}


def source_for_filename(name: str) -> str:
    """Source kind for an uploaded file name. Raises IngestionError."""
    ext = PurePath(name or "").suffix.lower().lstrip(".")
    try:
        return _EXTENSIONS[ext]
    except KeyError:
        raise IngestionError(f"Unsupported file format: {ext or name!r}") from None


def coerce_rows(source: str, rows: Any) -> List[SourceRow]:
    """Convert loosely typed rows into typed source rows.

    Raises IngestionError for an unknown source or a payload that is not a
    list of rows. Individual malformed rows become empty rows, which
    normalization later drops.
    """
    shape = SOURCES.get((source or "").strip().lower())
    if shape is None:
        raise IngestionError(f"Unsupported source format: {source!r}")
    if isinstance(rows, (str, bytes, Mapping)) or not isinstance(rows, Sequence):
        raise IngestionError(f"{source} rows must be a list")
    return [shape.from_raw(r) for r in rows]


def rows_from_table(table: Sequence[Sequence[Any]]) -> List[Dict[str, Any]]:
    """Header-first table (spreadsheet reader output) -> list of mappings."""
    if not table:
        return []
    headers = [str(h).strip() if h is not None else "" for h in table[0]]
    out: List[Dict[str, Any]] = []
    for values in table[1:]:
        if not any(v not in (None, "") for v in values):
            continue
        out.append({h: v for h, v in zip(headers, values) if h})
    return out
