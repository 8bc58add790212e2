"""
Entry point for turning an uploaded file into rows.

The extension picks the processor; every processor returns a ``ParsedFile``
with diagnostics instead of raising on bad input.
"""

import logging
from typing import Callable, Dict, Optional

from app.domain.imports.models import ParsedFile, ParseError, ParseOptions
from app.domain.imports.processors.csv_processor import parse_csv
from app.domain.imports.processors.excel_processor import parse_excel
from app.domain.imports.processors.json_processor import parse_json

logger = logging.getLogger(__name__)

_PROCESSORS: Dict[str, Callable[[bytes, Optional[ParseOptions]], ParsedFile]] = {
    "csv": parse_csv,
    "xlsx": parse_excel,
    "xls": parse_excel,
    "json": parse_json,
}


def detect_file_type(file_name: str) -> Optional[str]:
    """Return the lowercase extension if it is a supported import format."""
    if "." not in file_name:
        return None
    extension = file_name.rsplit(".", 1)[-1].lower()
    return extension if extension in _PROCESSORS else None


def parse_file(file_content: bytes, file_name: str, options: Optional[ParseOptions] = None) -> ParsedFile:
    options = options or ParseOptions()
    file_type = detect_file_type(file_name)

    if file_type is None:
        logger.warning(f"Rejected upload with unsupported file type: {file_name}")
        return ParsedFile(
            file_name=file_name,
            errors=[ParseError(message=f"Unsupported file format: {file_name}", severity="error")],
        )

    parsed = _PROCESSORS[file_type](file_content, options)
    parsed.file_name = file_name

    if parsed.has_fatal_errors:
        logger.warning(f"Failed to parse {file_name}: {[e.message for e in parsed.errors if e.severity == 'error']}")
    return parsed
