from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import List

import trafilatura
from bs4 import BeautifulSoup
from pdfminer.high_level import extract_text as pdf_extract_text

from .text_cleaner import clean_text


@dataclass
class ExtractResult:
    text: str
    method: str  # html | trafilatura | bs4_text | pdfminer | empty
    warnings: List[str] = field(default_factory=list)


def html_to_text(html: str) -> str:
    """Plain text of an HTML fragment, one block per line."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    return clean_text(soup.get_text("\n"))


def detail_main_text(html: str, min_len: int = 120) -> ExtractResult:
    """Main content of a full detail page, for postings whose list entry has no description."""
    warnings: List[str] = []
    if not html:
        return ExtractResult(text="", method="empty", warnings=["empty"])

    extracted = trafilatura.extract(
        html,
        output_format="txt",
        include_comments=False,
        include_tables=True,
    )
    if extracted and len(extracted.strip()) >= min_len:
        return ExtractResult(text=clean_text(extracted), method="trafilatura")
    warnings.append("trafilatura_failed_or_too_short")

    text = html_to_text(html)
    if text:
        return ExtractResult(text=text, method="bs4_text", warnings=warnings + ["noisy_fallback"])
    return ExtractResult(text="", method="empty", warnings=warnings + ["empty"])


def pdf_to_text(data: bytes) -> ExtractResult:
    if not data:
        return ExtractResult(text="", method="empty", warnings=["empty"])
    try:
        text = pdf_extract_text(io.BytesIO(data))
    except Exception as ex:
        # pdfminer raises a family of unrelated exceptions for broken documents
        return ExtractResult(text="", method="empty", warnings=[f"pdf_parse_failed:{type(ex).__name__}"])
    text = clean_text(text or "")
    if not text:
        return ExtractResult(text="", method="empty", warnings=["pdf_no_text"])
    return ExtractResult(text=text, method="pdfminer")
