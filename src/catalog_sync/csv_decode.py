"""catalog_sync.csv_decode

Tolerant CSV decoder for catalog import files.

Quoting follows RFC 4180: a double quote opens a quoted section, a doubled
quote inside it is a literal quote, and commas/newlines are literal only
inside quotes.  Unquoted fields are whitespace-trimmed; quoted content is
kept verbatim.  Both \\r\\n and \\n end a row.  Fully blank rows are dropped.

Rows wider than the header have their overflow joined back into the last
column with commas (free text with unescaped commas); short rows are padded
with empty strings.  Malformed input never raises here; only a file without
a usable header row is a DecodeError.  ``require_columns`` rejects a table
whose header lacks the columns a field map cannot do without.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

from catalog_sync.normalize import normalize_header


class DecodeError(ValueError):
    """Raised when input cannot be decoded into records at all."""


@dataclass(frozen=True)
class SourceRecord:
    """One decoded input record.

    For CSV input ``values`` is keyed by normalized header; for registry
    input it is the unwrapped JSON object.  ``row_number`` is the 1-based
    line (CSV) or item ordinal (registry) the record came from.
    """

    values: Mapping[str, Any]
    row_number: int
    kind: Literal["csv", "json"] = "csv"
    raw: tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def as_dict(self) -> dict[str, Any]:
        return dict(self.values)


@dataclass
class CsvTable:
    headers: list[str]
    records: list[SourceRecord]


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def _split_rows(text: str) -> list[tuple[int, list[str]]]:
    """Return (start_line, cells) for every physical record in text."""
    rows: list[tuple[int, list[str]]] = []
    row: list[str] = []
    cell: list[str] = []
    quoted = False       # currently inside quotes
    was_quoted = False   # current cell contained a quoted section
    line = 1
    row_start = 1

    def end_cell() -> None:
        value = "".join(cell)
        row.append(value if was_quoted else value.strip())

    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quoted:
            if ch == '"':
                if i + 1 < n and text[i + 1] == '"':
                    cell.append('"')
                    i += 2
                    continue
                quoted = False
            else:
                if ch == "\n":
                    line += 1
                cell.append(ch)
            i += 1
            continue

        if ch == '"':
            if not was_quoted and not "".join(cell).strip():
                cell.clear()
            quoted = True
            was_quoted = True
        elif ch == ",":
            end_cell()
            cell = []
            was_quoted = False
        elif ch in "\r\n":
            if ch == "\r" and i + 1 < n and text[i + 1] == "\n":
                i += 1
            end_cell()
            rows.append((row_start, row))
            row, cell, was_quoted = [], [], False
            line += 1
            row_start = line
        elif was_quoted and ch in " \t":
            # whitespace between a closing quote and the delimiter
            pass
        else:
            cell.append(ch)
        i += 1

    if cell or row or was_quoted:
        end_cell()
        rows.append((row_start, row))
    return [(start, cells) for start, cells in rows if any(c.strip() for c in cells)]


# ---------------------------------------------------------------------------
# Row repair
# ---------------------------------------------------------------------------

def align_row(cells: list[str], width: int) -> list[str]:
    """Fit cells to width: merge overflow into the last column, pad short rows."""
    if width <= 0:
        return []
    if len(cells) > width:
        head = cells[: width - 1]
        return head + [",".join(cells[width - 1:])]
    return cells + [""] * (width - len(cells))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def decode_csv(text: str) -> CsvTable:
    """Decode CSV text into normalized headers and SourceRecords.

    Raises:
        DecodeError: if there is no header row or no header has a name.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    rows = _split_rows(text)
    if not rows:
        raise DecodeError("CSV input is empty")

    _, header_cells = rows[0]
    headers = [normalize_header(h) for h in header_cells]
    if not any(headers):
        raise DecodeError("CSV header row has no usable column names")

    records: list[SourceRecord] = []
    for start_line, cells in rows[1:]:
        aligned = align_row(cells, len(headers))
        values: dict[str, str] = {}
        for header, value in zip(headers, aligned):
            # first occurrence of a duplicated header wins
            if header and header not in values:
                values[header] = value
        records.append(
            SourceRecord(values=values, row_number=start_line, kind="csv", raw=tuple(cells))
        )
    return CsvTable(headers=headers, records=records)


def require_columns(table: CsvTable, aliases: Sequence[str]) -> None:
    """Check that at least one of aliases is a header of table.

    Raises:
        DecodeError: if none of the aliases is present.
    """
    if not aliases:
        return
    wanted = {normalize_header(a) for a in aliases}
    if wanted.isdisjoint(table.headers):
        raise DecodeError(f"CSV must include one of these columns: {', '.join(aliases)}")
