from __future__ import annotations

import re
from typing import Any, Dict, List

from bs4 import BeautifulSoup

from ...core.utils import absolute_url, sha1_hex
from .base import ListCandidate, ListPage, page_of, resolve_total_pages

RE_PDF_ID = re.compile(r"/pdf/(\d+)\.pdf", re.IGNORECASE)


def external_id_for(pdf_url: str) -> str:
    """Numeric document id when the URL has one, else a stable hash of the URL."""
    m = RE_PDF_ID.search(pdf_url or "")
    if m:
        return m.group(1)
    return f"url:{sha1_hex(pdf_url)[:16]}"


def parse_list(html: str, *, base_url: str, page: int, source_cfg: Dict[str, Any]) -> ListPage:
    """One posting per linked PDF document. Never raises."""
    if not html:
        return ListPage.empty(page)
    soup = BeautifulSoup(html, "html.parser")

    candidates: List[ListCandidate] = []
    seen = set()
    for a in soup.select(source_cfg.get("link_selector") or 'a[href*="pdf/"]'):
        href = (a.get("href") or "").strip()
        if ".pdf" not in href.lower():
            continue
        url = absolute_url(base_url, href)
        if url in seen:
            continue
        seen.add(url)
        label = a.get_text(" ", strip=True) or None
        candidates.append(
            ListCandidate(
                external_id=external_id_for(url),
                title=label,
                url=url,
                document_url=url,
            )
        )

    marker = page_of(soup.get_text(" "), source_cfg.get("pagination_pattern", ""))
    total = resolve_total_pages(marker, 0, 0)
    return ListPage(
        candidates=candidates,
        current_page=page,
        total_pages=total or 1,
        total_results=len(candidates),
        total_known=total is not None,
    )
