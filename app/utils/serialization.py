from typing import Any
from decimal import Decimal
from datetime import datetime, date, time
import math

import pandas as pd


def make_json_safe(value: Any) -> Any:
    """
    Convert parsed cell values into JSON-serialisable structures so they can be
    stored in JSON columns (preview rows, source data, duplicate candidates).
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return None
        return value.isoformat()
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        # Whole-number floats from spreadsheets read as integers ("12345.0" ZIP codes).
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, (int, str, bool)) or value is None:
        return value
    # numpy scalars and anything else pandas hands back
    item = getattr(value, "item", None)
    if callable(item):
        return make_json_safe(item())
    return str(value)
