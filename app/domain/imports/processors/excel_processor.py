import io
import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from app.core.config import settings
from app.domain.imports.models import ParsedFile, ParseError, ParseOptions
from app.domain.imports.processors.csv_processor import make_unique_columns
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)


def _cell_value(value: Any) -> Any:
    """Unwrap a worksheet cell into a plain value; blank cells become ``""``."""
    # openpyxl exposes formula cells through their cached result.
    if hasattr(value, "result") and not isinstance(value, (str, bytes)):
        value = value.result
    if value is None:
        return ""
    if not isinstance(value, (list, dict)) and pd.isna(value):
        return ""
    return make_json_safe(value)


def _is_blank_row(values: List[Any]) -> bool:
    return all(value == "" for value in values)


def _fatal(message: str) -> ParsedFile:
    return ParsedFile(file_format="XLSX", errors=[ParseError(message=message, severity="error")])


def parse_excel(file_content: bytes, options: Optional[ParseOptions] = None) -> ParsedFile:
    """
    Parse a workbook's selected sheet (``sheet_name`` or the first sheet).

    Read failures (corrupt or unsupported workbook, missing sheet) come back as a
    single ``error`` diagnostic instead of raising.
    """
    options = options or ParseOptions()

    try:
        with pd.ExcelFile(io.BytesIO(file_content), engine="openpyxl") as workbook:
            sheet_names = workbook.sheet_names
            if not sheet_names:
                return _fatal("No worksheet found in file")
            if options.sheet_name and options.sheet_name not in sheet_names:
                return _fatal(f"Worksheet '{options.sheet_name}' not found in file")
            target_sheet = options.sheet_name or sheet_names[0]
            frame = workbook.parse(target_sheet, header=None, dtype=object)
    except Exception as e:
        logger.warning(f"Could not read Excel file: {e}")
        return _fatal(f"Failed to parse Excel file: {e}")

    raw_rows = [[_cell_value(value) for value in row] for row in frame.itertuples(index=False, name=None)]
    raw_rows = [row for row in raw_rows if not _is_blank_row(row)]
    raw_rows = raw_rows[options.skip_rows:]

    if not raw_rows:
        return ParsedFile(
            file_format="XLSX",
            errors=[ParseError(message=f"Worksheet '{target_sheet}' contains no rows", severity="warning")],
        )

    if options.has_headers:
        header = [str(value).strip() if value != "" else "" for value in raw_rows[0]]
        columns = make_unique_columns(header)
        data_rows = raw_rows[1:]
    else:
        columns = [f"Column {i + 1}" for i in range(len(raw_rows[0]))]
        data_rows = raw_rows

    if options.max_rows:
        data_rows = data_rows[:options.max_rows]

    # Worksheet rows are padded to the sheet width, which the columns already cover.
    records: List[Dict[str, Any]] = [dict(zip(columns, values)) for values in data_rows]

    logger.info(f"Parsed Excel sheet '{target_sheet}': {len(records)} rows, columns: {columns}")

    return ParsedFile(
        file_format="XLSX",
        total_rows=len(records),
        columns=columns,
        preview=records[:settings.preview_row_limit],
        rows=records,
    )
