from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import urljoin

RE_NON_WORD_SPACE = re.compile(r"[^\w ]|_")
RE_NON_ALNUM = re.compile(r"[^a-z0-9]+")
RE_MULTI_SPACE = re.compile(r"\s+")


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def normalize_whitespace(text: str) -> str:
    return " ".join((text or "").split()).strip()


def clean_str(value) -> Optional[str]:
    """Trim a scalar to a non-empty string or None."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = normalize_whitespace(value)
    return value or None


def normalize_company_name(name: str) -> str:
    """Matching key for companies: "Van Walraven B.V." -> "van walraven bv".

    Letters of any script survive ("Café Nöll" -> "café nöll"); a name made only of
    punctuation keys on its case-folded text.
    """
    folded = normalize_whitespace(unicodedata.normalize("NFC", name or "").casefold())
    key = RE_MULTI_SPACE.sub(" ", RE_NON_WORD_SPACE.sub("", folded)).strip()
    return key or folded


def split_name(full_name: str) -> Tuple[Optional[str], Optional[str]]:
    parts = (full_name or "").split()
    if not parts:
        return None, None
    if len(parts) == 1:
        return parts[0], None
    return parts[0], " ".join(parts[1:])


def slugify(*parts: str, max_len: int = 100) -> str:
    raw = "-".join(p for p in parts if p)
    slug = RE_NON_ALNUM.sub("-", raw.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def absolute_url(base_url: str, href: str) -> str:
    if not href:
        return ""
    return urljoin(base_url.rstrip("/") + "/", href.strip())


def safe_int(x, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def safe_float(x, default: Optional[float] = None) -> Optional[float]:
    try:
        return float(x)
    except Exception:
        return default
