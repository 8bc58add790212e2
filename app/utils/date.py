"""
Date parsing utilities for flexible date format handling.

Imported client files carry dates in whatever format the source system used.
Values are normalized to ``YYYY-MM-DD``: explicit formats and the fixed
ISO/US/EU patterns are tried first, pandas inference last.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, List, Optional, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}

# (pattern, order of year/month/day groups)
DATE_PATTERNS: List[Tuple[re.Pattern, Tuple[int, int, int], str]] = [
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), (1, 2, 3), "ISO"),    # YYYY-MM-DD
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), (3, 1, 2), "US"),     # MM/DD/YYYY
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), (3, 2, 1), "EU"),     # DD-MM-YYYY
]

_FORMAT_TOKENS = (("YYYY", "%Y"), ("YY", "%y"), ("MM", "%m"), ("DD", "%d"))


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def is_date_like(value: str) -> bool:
    """True if the value matches one of the fixed ISO/US/EU date patterns."""
    return any(pattern.match(value) for pattern, _, _ in DATE_PATTERNS)


def _format_to_strptime(fmt: str) -> str:
    for token, directive in _FORMAT_TOKENS:
        fmt = fmt.replace(token, directive)
    return fmt


def _from_fixed_patterns(text: str) -> Optional[str]:
    for pattern, (year_idx, month_idx, day_idx), _label in DATE_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        groups = match.groups()
        try:
            parsed = date(int(groups[year_idx - 1]), int(groups[month_idx - 1]), int(groups[day_idx - 1]))
        except ValueError:
            # Shape matched but the calendar date is impossible; let generic parsing decide.
            return None
        return parsed.isoformat()
    return None


def parse_flexible_date(
    value: Any,
    fmt: Optional[str] = None,
    *,
    log_context: Optional[str] = None,
    log_failures: bool = True,
) -> Optional[str]:
    """
    Parse a date value and return it as ``YYYY-MM-DD``.

    Args:
        value: Date value (string, datetime, date or pandas Timestamp)
        fmt: Optional explicit source format such as ``DD/MM/YYYY``; tried first
        log_context: Label used to group parse-failure logs
        log_failures: Set False for speculative parsing (type inference)

    Returns:
        ISO date string, or None if the value could not be parsed
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None

    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if text == "":
        return None

    if fmt:
        try:
            return datetime.strptime(text, _format_to_strptime(fmt)).date().isoformat()
        except ValueError:
            pass

    fixed = _from_fixed_patterns(text)
    if fixed is not None:
        return fixed

    try:
        parsed = pd.to_datetime(text, errors="raise")
    except Exception as exc:
        if log_failures:
            _record_parse_failure(value, log_context, exc)
        return None

    if pd.isna(parsed):
        return None
    return parsed.strftime("%Y-%m-%d")
