import json
import logging
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.domain.imports.models import ParsedFile, ParseError, ParseOptions
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)


def _fatal(message: str) -> ParsedFile:
    return ParsedFile(file_format="JSON", errors=[ParseError(message=message, severity="error")])


def parse_json(file_content: bytes, options: Optional[ParseOptions] = None) -> ParsedFile:
    """Parse a JSON array of objects. Columns are the keys of the first object."""
    options = options or ParseOptions()

    try:
        data = json.loads(file_content.decode(options.encoding))
    except (UnicodeDecodeError, LookupError) as e:
        return _fatal(f"Unable to decode file as {options.encoding}: {e}")
    except json.JSONDecodeError as e:
        return _fatal(f"Invalid JSON: {e}")

    if not isinstance(data, list):
        return _fatal("JSON must contain an array of objects")

    if not data:
        return ParsedFile(
            file_format="JSON",
            errors=[ParseError(message="JSON array is empty", severity="warning")],
        )

    items = data[options.skip_rows:]
    if options.max_rows:
        items = items[:options.max_rows]

    errors: List[ParseError] = []
    records: List[Dict[str, Any]] = []
    columns: List[str] = []

    for offset, item in enumerate(items):
        row_number = options.skip_rows + offset + 1
        if not isinstance(item, dict):
            errors.append(ParseError(
                row=row_number,
                message=f"Expected an object but found {type(item).__name__}",
                severity="warning",
            ))
            continue
        if not columns:
            columns = [str(key) for key in item.keys()]
        records.append({str(key): make_json_safe(value) for key, value in item.items()})

    logger.info(f"Parsed JSON: {len(records)} rows, columns: {columns}")

    return ParsedFile(
        file_format="JSON",
        total_rows=len(records),
        columns=columns,
        preview=records[:settings.preview_row_limit],
        errors=errors,
        rows=records,
    )
