import logging
import re
from typing import Any, Dict, List

import pandas as pd

from app.domain.imports.models import ColumnAnalysis, InferredType
from app.utils.date import is_date_like
from app.utils.phone import looks_like_phone

logger = logging.getLogger(__name__)

SAMPLE_VALUE_LIMIT = 5

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SSN_PATTERN = re.compile(r"^\d{3}-?\d{2}-?\d{4}$")
BOOLEAN_TOKENS = {"true", "false", "yes", "no", "1", "0", "y", "n"}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def infer_type(values: List[Any]) -> InferredType:
    """
    Infer a column's semantic type from its non-empty values.

    Checks run in a fixed order and the first one every value satisfies wins:
    email, phone, ssn, boolean, date, number; anything else is ``string``.
    """
    if not values:
        return "string"

    string_values = [str(value) for value in values]

    if all(EMAIL_PATTERN.match(v) for v in string_values):
        return "email"
    if all(looks_like_phone(v) for v in string_values):
        return "phone"
    if all(SSN_PATTERN.match(v) for v in string_values):
        return "ssn"
    if all(v.lower() in BOOLEAN_TOKENS for v in string_values):
        return "boolean"
    if all(is_date_like(v) for v in string_values):
        return "date"

    try:
        pd.to_numeric(pd.Series(string_values).str.strip(), errors="raise")
        return "number"
    except (ValueError, TypeError):
        pass

    return "string"


def detect_patterns(values: List[Any]) -> List[str]:
    """Report a shared value length (``fixed_length:N``) and a shared prefix longer than 2 chars."""
    patterns: List[str] = []
    string_values = [str(value) for value in values]
    if not string_values:
        return patterns

    lengths = {len(v) for v in string_values}
    if len(lengths) == 1:
        patterns.append(f"fixed_length:{lengths.pop()}")

    if len(string_values) > 1:
        prefix = string_values[0]
        for value in string_values[1:]:
            while prefix and not value.startswith(prefix):
                prefix = prefix[:-1]
        if len(prefix) > 2:
            patterns.append(f"common_prefix:{prefix}")

    return patterns


def analyze_columns(rows: List[Dict[str, Any]]) -> Dict[str, ColumnAnalysis]:
    """Profile every column of ``rows`` (columns taken from the first row)."""
    analysis: Dict[str, ColumnAnalysis] = {}
    if not rows:
        return analysis

    for column in rows[0].keys():
        values = [row.get(column) for row in rows]
        present = [value for value in values if not _is_empty(value)]

        analysis[column] = ColumnAnalysis(
            column=column,
            sample_values=[str(value) for value in present[:SAMPLE_VALUE_LIMIT]],
            unique_count=len({str(value) for value in present}),
            null_count=len(rows) - len(present),
            inferred_type=infer_type(present),
            patterns=detect_patterns(present),
        )

    logger.debug(f"Analyzed {len(analysis)} columns over {len(rows)} rows")
    return analysis
