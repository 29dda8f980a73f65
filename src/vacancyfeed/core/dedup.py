from __future__ import annotations

from typing import Optional

from .db import Database
from .utils import normalize_whitespace, sha1_hex


def content_hash(title: str, company: str, city: str, url: str) -> str:
    """Secondary fingerprint: sha1 over title|company|city|url, case and whitespace folded."""
    parts = [normalize_whitespace(p or "").lower() for p in (title, company, city, url)]
    return sha1_hex("|".join(parts))


class Deduplicator:
    """Answers "already ingested?" before any detail fetch or AI call is spent."""

    def __init__(self, db: Database, source_id: int) -> None:
        self.db = db
        self.source_id = source_id

    def exists(self, external_id: str, source_id: Optional[int] = None) -> bool:
        if not external_id:
            return False
        sid = self.source_id if source_id is None else source_id
        return self.db.vacancy_exists(str(external_id), sid)

    def seen_hash(self, fingerprint: str) -> bool:
        return bool(fingerprint) and self.db.content_hash_exists(fingerprint)
