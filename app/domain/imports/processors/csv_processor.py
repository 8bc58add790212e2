import logging
import re
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.domain.imports.models import ParsedFile, ParseError, ParseOptions

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r"\r?\n")


class CSVRowError(ValueError):
    """A single CSV line could not be split into fields."""


def split_csv_line(line: str, delimiter: str = ",") -> List[str]:
    """
    Split one CSV line into trimmed field values.

    Quote-aware: a ``"`` opens or closes a quoted section, ``""`` inside a
    quoted section is a literal quote, and the delimiter only separates
    fields outside quotes.

    Raises:
        CSVRowError: if a quoted section is never closed
    """
    values: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    length = len(line)

    while i < length:
        char = line[i]
        if char == '"' and not in_quotes:
            in_quotes = True
        elif char == '"' and in_quotes:
            if i + 1 < length and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = False
        elif char == delimiter and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1

    if in_quotes:
        raise CSVRowError("Unterminated quoted field")

    values.append("".join(current).strip())
    return values


def make_unique_columns(columns: List[str]) -> List[str]:
    """Fill blank header cells with ``Column N`` and suffix repeated names (``email``, ``email.1``)."""
    seen: Dict[str, int] = {}
    unique: List[str] = []
    for index, column in enumerate(columns):
        name = column if column else f"Column {index + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}.{seen[name]}"
        else:
            seen[name] = 0
        unique.append(name)
    return unique


def _fatal(message: str) -> ParsedFile:
    return ParsedFile(file_format="CSV", errors=[ParseError(message=message, severity="error")])


def parse_csv(file_content: bytes, options: Optional[ParseOptions] = None) -> ParsedFile:
    """
    Parse CSV bytes into columns, row records and diagnostics.

    Malformed rows are reported as warnings and left out of ``rows``/``preview``;
    a file that cannot be read at all comes back with a single ``error``.
    """
    options = options or ParseOptions()

    try:
        text = file_content.decode(options.encoding)
    except LookupError:
        return _fatal(f"Unknown encoding: {options.encoding}")
    except UnicodeDecodeError as e:
        return _fatal(f"Unable to decode file as {options.encoding}: {e}")

    text = text.lstrip("﻿")
    lines = [line for line in _LINE_BREAK.split(text) if line.strip()]

    if not lines:
        return _fatal("File is empty")

    data_lines = lines[options.skip_rows:]
    if not data_lines:
        return _fatal(f"No rows left after skipping {options.skip_rows} rows")

    try:
        first_values = split_csv_line(data_lines[0], options.delimiter)
    except CSVRowError as e:
        return _fatal(f"Failed to parse header row: {e}")

    if options.has_headers:
        columns = make_unique_columns(first_values)
        data_start = 1
    else:
        columns = [f"Column {i + 1}" for i in range(len(first_values))]
        data_start = 0

    data_rows = data_lines[data_start:]
    if options.max_rows:
        data_rows = data_rows[:options.max_rows]

    errors: List[ParseError] = []
    records: List[Dict[str, Any]] = []

    for i, line in enumerate(data_rows):
        file_row = i + data_start + options.skip_rows + 1
        try:
            values = split_csv_line(line, options.delimiter)
            extra = [value for value in values[len(columns):] if value]
            if extra:
                raise CSVRowError(f"Row has {len(values)} values but the header defines {len(columns)} columns")
        except CSVRowError as e:
            errors.append(ParseError(row=file_row, message=f"Failed to parse row: {e}", severity="warning"))
            continue

        records.append({column: values[idx] if idx < len(values) else "" for idx, column in enumerate(columns)})

    if errors:
        logger.warning(f"CSV parse skipped {len(errors)} malformed rows")
    logger.info(f"Parsed CSV: {len(records)} rows, columns: {columns}")

    return ParsedFile(
        file_format="CSV",
        total_rows=len(records),
        columns=columns,
        preview=records[:settings.preview_row_limit],
        errors=errors,
        rows=records,
    )
