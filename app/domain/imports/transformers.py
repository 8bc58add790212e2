"""
Value transformers applied to source values as rows are mapped.

A transformer tag is ``name`` or ``name:argument`` (``date:DD/MM/YYYY``).
Empty values and unknown tags pass through untouched.
"""

import logging
import re
from typing import Any, Dict, Iterable, Optional

from app.domain.imports.models import FieldMapping, TargetField
from app.utils.date import parse_flexible_date
from app.utils.phone import digits_only, normalize_us_phone

logger = logging.getLogger(__name__)

_NUMBER_CHARS = re.compile(r"[^0-9.\-]")
_LEADING_FLOAT = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)")


def _to_number(value: Any) -> Any:
    cleaned = _NUMBER_CHARS.sub("", str(value))
    match = _LEADING_FLOAT.match(cleaned)
    if not match:
        return value
    return float(match.group(0))


def _to_date(value: Any, fmt: Optional[str] = None) -> Any:
    parsed = parse_flexible_date(value, fmt, log_context="transform")
    return parsed if parsed is not None else value


def transform_value(value: Any, transformer: Optional[str] = None) -> Any:
    if value is None or value == "":
        return value
    if not transformer:
        return value

    name, _, argument = transformer.partition(":")
    name = name.strip().lower()

    if name == "date":
        return _to_date(value, argument or None)
    if name == "phone":
        return normalize_us_phone(value)
    if name == "ssn":
        return digits_only(value)
    if name == "uppercase":
        return str(value).upper()
    if name == "lowercase":
        return str(value).lower()
    if name == "trim":
        return str(value).strip()
    if name == "number":
        return _to_number(value)

    logger.debug(f"Unknown transformer '{transformer}', leaving value unchanged")
    return value


def map_record_data(source_row: Dict[str, Any], mappings: Iterable[FieldMapping]) -> Dict[TargetField, Any]:
    """
    Build the target-keyed record for one source row.

    Missing or empty source values fall back to the mapping's ``default_value``
    before the transformer runs.
    """
    mapped: Dict[TargetField, Any] = {}
    for mapping in mappings:
        value = source_row.get(mapping.source_column)
        if isinstance(value, str):
            value = value.strip()
        if (value is None or value == "") and mapping.default_value is not None:
            value = mapping.default_value
        mapped[mapping.target_field] = transform_value(value, mapping.transformer)
    return mapped
