from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from ...core.extract import html_to_text
from ...core.schema import format_salary
from ...core.utils import clean_str, safe_float, safe_int, slugify
from .base import ListCandidate, ListPage, page_of, resolve_total_pages

DEFAULT_TITLE = "Onbekende functie"
DEFAULT_COMPANY = "Onbekend"


def _next_data(soup: BeautifulSoup) -> Optional[Dict[str, Any]]:
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None:
        return None
    raw = script.string or script.get_text() or ""
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _page_props(data: Dict[str, Any]) -> Dict[str, Any]:
    props = data.get("props")
    page_props = props.get("pageProps") if isinstance(props, dict) else None
    return page_props if isinstance(page_props, dict) else {}


def vacancy_url(base_url: str, slug: Optional[str], external_id: str) -> str:
    base = base_url.rstrip("/")
    if slug:
        return f"{base}/vacature/{slug}/{external_id}"
    return f"{base}/vacature/{external_id}"


def _name(node: Any) -> Optional[str]:
    if isinstance(node, dict):
        return clean_str(node.get("name"))
    return clean_str(node)


def _salary(node: Any) -> Optional[str]:
    if isinstance(node, dict):
        return format_salary(node.get("min"), node.get("max"), node.get("period"))
    return clean_str(node)


def _candidate(item: Dict[str, Any], base_url: str) -> Optional[ListCandidate]:
    external_id = clean_str(item.get("_id"))
    src = item.get("_source")
    if not external_id or not isinstance(src, dict):
        return None

    title = clean_str(src.get("title")) or DEFAULT_TITLE
    company = _name(src.get("companyBranch")) or DEFAULT_COMPANY
    address = src.get("address") if isinstance(src.get("address"), dict) else {}
    city = clean_str(address.get("city"))

    lon = lat = None
    loc = address.get("location")
    if isinstance(loc, (list, tuple)) and len(loc) >= 2:
        lon, lat = safe_float(loc[0]), safe_float(loc[1])

    slug = clean_str(src.get("slug")) or slugify(title, company, city or "")
    description_html = src.get("description") if isinstance(src.get("description"), str) else None
    hours = src.get("workingHours")
    if isinstance(hours, dict):
        lo, hi = safe_int(hours.get("min"), 0), safe_int(hours.get("max"), 0)
        hours = f"{lo}-{hi}" if lo and hi and hi != lo else (lo or hi or None)

    return ListCandidate(
        external_id=external_id,
        title=title,
        company_name=company,
        url=vacancy_url(base_url, slug, external_id),
        city=city,
        latitude=lat,
        longitude=lon,
        employment_type=_name(src.get("employmentType")),
        working_hours=clean_str(hours),
        salary=_salary(src.get("salary")),
        description_html=description_html,
        description_text=html_to_text(description_html or "") or None,
        raw=item,
    )


def parse_list(html: str, *, base_url: str, page: int, source_cfg: Dict[str, Any]) -> ListPage:
    """Postings embedded in the Next.js page payload. Never raises."""
    if not html:
        return ListPage.empty(page)
    soup = BeautifulSoup(html, "html.parser")
    marker = page_of(soup.get_text(" "), source_cfg.get("pagination_pattern", ""))
    data = _next_data(soup)
    if data is None:
        return ListPage(
            candidates=[],
            current_page=page,
            total_pages=marker[1] if marker else 1,
            total_results=0,
            total_known=marker is not None,
        )

    props = _page_props(data)
    items = props.get("jobPostings")
    candidates: List[ListCandidate] = []
    seen = set()
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        cand = _candidate(item, base_url)
        if cand is None or cand.external_id in seen:
            continue
        seen.add(cand.external_id)
        candidates.append(cand)

    total_results = safe_int(props.get("totalResults"), 0)
    total = resolve_total_pages(marker, total_results, int(source_cfg.get("page_size") or 0))
    return ListPage(
        candidates=candidates,
        current_page=page,
        total_pages=total or 1,
        total_results=total_results,
        total_known=total is not None,
    )
