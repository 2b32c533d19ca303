"""
Flow Dialect Codec

Parses delimited flow text into raw rows and renders rows back to text.

- parse() never fails: malformed rows are passed through for the validator
- "" inside a quoted field is an escaped quote, quoted commas are data
- a quoted field may continue onto the next physical line
- serialize() quotes fields holding a comma, quote or line break
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from flow_agent.models.record import (
    COLUMN_COUNT,
    COLUMNS,
    HEADER_LINE,
    Col,
    FlowDocument,
    NodeKind,
    RawRow,
    Record,
)

logger = logging.getLogger(__name__)

DELIMITER = ","
QUOTE = '"'

# Where the overflow of an over-long row is merged back, per node type
JSON_SEARCH_START = {NodeKind.DECISION: Col.RICH_CONTENT, NodeKind.ACTION: Col.PARAM_INPUT}
JSON_FALLBACK = {NodeKind.DECISION: Col.MESSAGE, NodeKind.ACTION: Col.DESCRIPTION}


def parse_line(line: str) -> Tuple[str, ...]:
    """Split one logical line into fields."""
    fields, _ = _scan(line)
    return tuple(fields)


def _scan(text: str) -> Tuple[List[str], bool]:
    """Tokenize ``text``; also report whether it ended inside a quoted field."""
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    at_field_start = True
    i = 0
    while i < len(text):
        char = text[i]
        if in_quotes:
            if char == QUOTE:
                if i + 1 < len(text) and text[i + 1] == QUOTE:
                    current.append(QUOTE)
                    i += 1
                else:
                    in_quotes = False
            else:
                current.append(char)
        elif char == QUOTE and at_field_start:
            in_quotes = True
            at_field_start = False
        elif char == DELIMITER:
            fields.append("".join(current))
            current = []
            at_field_start = True
        else:
            current.append(char)
            at_field_start = False
        i += 1
    fields.append("".join(current))
    return fields, in_quotes


def is_header(fields: Sequence[str]) -> bool:
    """True only for the complete column header row."""
    return len(fields) == len(COLUMNS) and all(
        value.strip().lower() == name.lower() for value, name in zip(fields, COLUMNS)
    )


def parse(text: str, skip_header: bool = True) -> List[RawRow]:
    """Tokenize flow text into raw rows.

    Args:
        text: Delimited flow text, header row optional
        skip_header: Drop a leading header row

    Returns:
        Raw rows in file order; column counts are not checked here
    """
    rows: List[RawRow] = []
    pending: Optional[str] = None
    pending_line = 0

    for line_number, line in enumerate(text.replace("\r\n", "\n").split("\n"), start=1):
        if pending is None:
            if not line.strip():
                continue
            logical, start = line, line_number
        else:
            logical, start = pending + "\n" + line, pending_line

        fields, open_quote = _scan(logical)
        if open_quote:
            pending, pending_line = logical, start
            continue
        pending = None
        rows.append(RawRow(fields=tuple(fields), line=start))

    if pending is not None:
        # Unterminated quote at end of input: keep what was read
        logger.debug(f"Unterminated quoted field starting on line {pending_line}")
        rows.append(RawRow(fields=tuple(_scan(pending)[0]), line=pending_line))

    if skip_header and rows and is_header(rows[0].fields):
        rows = rows[1:]
    return rows


def quote_field(value: str) -> str:
    if any(ch in value for ch in (DELIMITER, QUOTE, "\n", "\r")):
        return QUOTE + value.replace(QUOTE, QUOTE * 2) + QUOTE
    return value


def serialize(row: RawRow) -> str:
    """Render one raw row as a delimited line."""
    return DELIMITER.join(quote_field(value) for value in row.fields)


def serialize_fields(fields: Sequence[str]) -> str:
    return DELIMITER.join(quote_field(value) for value in fields)


def serialize_rows(rows: Iterable[RawRow], header: bool = True) -> str:
    lines = [HEADER_LINE] if header else []
    lines.extend(serialize(row) for row in rows)
    return "\n".join(lines)


def serialize_document(document: Iterable[Record], header: bool = True) -> str:
    """Render typed records, header first."""
    lines = [HEADER_LINE] if header else []
    lines.extend(serialize_fields(record.to_row()) for record in document)
    return "\n".join(lines)


def parse_document(text: str) -> FlowDocument:
    """Shortcut: parse and promote rows without diagnostics.

    Rows that cannot be promoted are skipped; use the structural validator
    when the skipped rows matter.
    """
    from flow_agent.tools.validation import StructuralValidator

    return StructuralValidator().validate(parse(text)).document


def normalize_columns(fields: Sequence[str]) -> Tuple[Tuple[str, ...], Optional[str]]:
    """Force a row to exactly 26 columns.

    Short rows are padded. Long rows usually come from unquoted commas inside
    a JSON cell, so the overflow is joined back into the first cell starting
    with ``{`` from the JSON-bearing column onwards, or into the free-text
    column when no such cell exists.

    Returns:
        (normalized fields, note describing the change or None)
    """
    count = len(fields)
    if count == COLUMN_COUNT:
        return tuple(fields), None
    if count < COLUMN_COUNT:
        padded = tuple(fields) + ("",) * (COLUMN_COUNT - count)
        return padded, f"padded {count} columns to {COLUMN_COUNT}"

    kind = NodeKind.ACTION if fields[Col.NODE_TYPE].strip().upper() == "A" else NodeKind.DECISION
    overflow = count - COLUMN_COUNT
    start = JSON_SEARCH_START[kind]
    target = JSON_FALLBACK[kind]
    for index in range(start, count - overflow):
        if fields[index].strip().startswith("{"):
            target = index
            break

    merged = DELIMITER.join(fields[target : target + overflow + 1])
    result = tuple(fields[:target]) + (merged,) + tuple(fields[target + overflow + 1 :])
    return result, f"merged {overflow} overflow columns into {COLUMNS[target]}"
