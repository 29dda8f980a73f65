from __future__ import annotations

import html as _html
import re

RE_INLINE_SPACE = re.compile(r"[ \t\r\f\v\xa0]+")
RE_MANY_NEWLINES = re.compile(r"\n{3,}")

_MOJIBAKE_MARKERS = ["Ã©", "Ã«", "Ã¨", "â‚¬", "â€™", "â€œ", "â€", "Â"]


def _mojibake_score(text: str) -> int:
    return sum(text.count(m) for m in _MOJIBAKE_MARKERS)


def fix_text_encoding(text: str) -> str:
    """Best-effort fix for UTF-8 decoded as latin-1 and for HTML entities."""
    if not text:
        return ""
    t = _html.unescape(text)
    score = _mojibake_score(t)
    if score == 0:
        return t
    try:
        cand = t.encode("latin-1", errors="ignore").decode("utf-8", errors="ignore")
    except UnicodeError:
        return t
    return cand if _mojibake_score(cand) < score else t


def clean_text(text: str) -> str:
    """Collapse inline whitespace per line and keep at most one blank line."""
    if not text:
        return ""
    text = fix_text_encoding(text)
    lines = [RE_INLINE_SPACE.sub(" ", ln).strip() for ln in text.splitlines()]
    joined = "\n".join(lines)
    return RE_MANY_NEWLINES.sub("\n\n", joined).strip()


def truncate_text(text: str, max_chars: int, *, ellipsis: str = "...") -> str:
    """Cut to max_chars, preferring a natural boundary, and mark the cut."""
    if not text:
        return ""
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text

    cut = text[:max_chars]
    for sep in ["\n", ". ", "; ", ", "]:
        idx = cut.rfind(sep)
        if idx > max_chars * 0.7:
            cut = cut[: idx + len(sep)]
            break
    return cut.rstrip() + ellipsis
