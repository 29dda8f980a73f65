from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from ...core.utils import absolute_url


@dataclass
class ListCandidate:
    external_id: str
    title: Optional[str] = None
    company_name: Optional[str] = None
    url: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    employment_type: Optional[str] = None
    working_hours: Optional[str] = None
    salary: Optional[str] = None
    description_html: Optional[str] = None
    description_text: Optional[str] = None
    document_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ListPage:
    candidates: List[ListCandidate]
    current_page: int
    total_pages: int = 1
    total_results: int = 0
    # False when the page carried neither a page marker nor a usable result count.
    total_known: bool = False

    @classmethod
    def empty(cls, page: int) -> "ListPage":
        return cls(candidates=[], current_page=page, total_pages=1, total_results=0)


def page_of(text: str, pattern: str) -> Optional[Tuple[int, int]]:
    """Localized "page X of Y" marker, e.g. "Pagina 2 van 670"."""
    if not text or not pattern:
        return None
    m = re.search(pattern, text, flags=re.IGNORECASE)
    if not m:
        return None
    try:
        current, total = int(m.group(1)), int(m.group(2))
    except (IndexError, ValueError):
        return None
    if total < 1:
        return None
    return current, total


def resolve_total_pages(
    marker: Optional[Tuple[int, int]], total_results: int, page_size: int
) -> Optional[int]:
    """Total page count from the marker, else from the result count; None when neither is there."""
    if marker:
        return marker[1]
    if total_results > 0 and page_size > 0:
        return max(1, math.ceil(total_results / page_size))
    return None


def set_query_param(url: str, key: str, value: Any) -> str:
    p = urlparse(url)
    query = dict(parse_qsl(p.query, keep_blank_values=True))
    query[key] = str(value)
    return urlunparse(p._replace(query=urlencode(query)))


def page_url(base_url: str, list_path: str, page_param: str, page: int) -> str:
    """First page is the bare list URL; later pages carry the page parameter."""
    url = absolute_url(base_url, list_path or "")
    if page <= 1:
        return url
    return set_query_param(url, page_param, page)
