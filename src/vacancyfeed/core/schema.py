from __future__ import annotations

import re
from typing import Optional, Tuple

from dateutil import parser as date_parser

from .utils import normalize_whitespace, safe_float

_EMPLOYMENT_TYPES = {
    "full-time": "Fulltime",
    "fulltime": "Fulltime",
    "full_time": "Fulltime",
    "part-time": "Parttime",
    "parttime": "Parttime",
    "part_time": "Parttime",
}

_SALARY_PERIODS = {
    "hour": "per uur",
    "day": "per dag",
    "week": "per week",
    "month": "per maand",
    "year": "per jaar",
}

RE_INT = re.compile(r"\d+")


def normalize_date(raw) -> Optional[str]:
    raw = normalize_whitespace(str(raw or ""))
    if not raw:
        return None
    try:
        dt = date_parser.parse(raw, fuzzy=True)
    except (ValueError, OverflowError):
        return None
    return dt.date().isoformat()


def normalize_employment_type(raw) -> Optional[str]:
    """Map source employment labels to the stored vocabulary; unknown values become None."""
    key = normalize_whitespace(str(raw or "")).lower()
    if not key:
        return None
    return _EMPLOYMENT_TYPES.get(key)


def _format_amount(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}".replace(",", ".")
    whole, frac = f"{value:,.2f}".split(".")
    return f"{whole.replace(',', '.')},{frac}"


def format_salary(min_value, max_value=None, period: Optional[str] = None) -> Optional[str]:
    """Render a structured salary range, e.g. "€ 2.800 - € 3.400 per maand"."""
    lo = safe_float(min_value)
    hi = safe_float(max_value)
    if lo is None and hi is None:
        return None
    if lo is not None and hi is not None and hi != lo:
        text = f"€ {_format_amount(lo)} - € {_format_amount(hi)}"
    else:
        text = f"€ {_format_amount(lo if lo is not None else hi)}"
    unit = _SALARY_PERIODS.get(normalize_whitespace(str(period or "")).lower())
    if unit:
        text = f"{text} {unit}"
    return text


def parse_hours_range(raw) -> Tuple[Optional[int], Optional[int]]:
    """First integer is the minimum, a second one (if any) the maximum: "32 - 40 uur" -> (32, 40)."""
    nums = [int(n) for n in RE_INT.findall(str(raw or ""))]
    if not nums:
        return None, None
    lo = nums[0]
    hi = nums[1] if len(nums) > 1 and nums[1] >= lo else None
    return lo, hi
