from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .db import COMPANY_FIELDS, Database
from .logging import log_event
from .utils import clean_str, normalize_company_name, split_name


@dataclass
class CompanyResolution:
    id: int
    created: bool
    updated: bool
    patched_fields: tuple = ()


@dataclass
class ContactResolution:
    id: int
    created: bool


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _missing_fields(existing: Dict[str, Any], observed: Dict[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    for key in COMPANY_FIELDS:
        new_val = observed.get(key)
        if _is_empty(new_val):
            continue
        if _is_empty(existing.get(key)):
            updates[key] = new_val
    return updates


class EntityResolver:
    """Find-or-create for companies and contacts.

    Companies are matched on their normalized name and only ever receive
    values for columns that are still empty. Contacts are matched on email
    and never patched.
    """

    def __init__(self, db: Database, *, source: str, run_id: str = "") -> None:
        self.db = db
        self.source = source
        self.run_id = run_id

    def _observed(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        out = {k: clean_str(observed.get(k)) for k in COMPANY_FIELDS}
        if out.get("email"):
            out["email"] = out["email"].lower()
        return out

    def _patch(self, existing: Dict[str, Any], observed: Dict[str, Any]) -> CompanyResolution:
        updates = _missing_fields(existing, observed)
        if updates:
            self.db.patch_company(int(existing["id"]), updates)
            log_event(
                "company_updated",
                run_id=self.run_id,
                source=self.source,
                company_id=existing["id"],
                fields=sorted(updates),
            )
        return CompanyResolution(
            id=int(existing["id"]),
            created=False,
            updated=bool(updates),
            patched_fields=tuple(sorted(updates)),
        )

    def resolve_company(self, name: str, observed: Optional[Dict[str, Any]] = None) -> CompanyResolution:
        display = clean_str(name)
        key = normalize_company_name(display or "")
        if not key:
            raise ValueError("company name is empty after normalization")
        values = self._observed(observed or {})

        existing = self.db.find_company(key)
        if existing:
            return self._patch(existing, values)

        try:
            company_id = self.db.insert_company(display, key, {**values, "source": self.source})
        except sqlite3.IntegrityError:
            # Another writer created it between our lookup and insert.
            existing = self.db.find_company(key)
            if not existing:
                raise
            return self._patch(existing, values)

        log_event(
            "company_created",
            run_id=self.run_id,
            source=self.source,
            company_id=company_id,
            name=display,
        )
        return CompanyResolution(id=company_id, created=True, updated=False)

    def resolve_contact(
        self, company_id: Optional[int], observed: Dict[str, Any]
    ) -> Optional[ContactResolution]:
        name = clean_str(observed.get("name"))
        email = clean_str(observed.get("email"))
        email = email.lower() if email else None
        if not name and not email:
            return None

        if email:
            existing = self.db.find_contact_by_email(email)
            if existing:
                return ContactResolution(id=int(existing["id"]), created=False)

        first_name, last_name = split_name(name or "")
        contact_id = self.db.insert_contact(
            company_id,
            {
                "name": name,
                "first_name": first_name,
                "last_name": last_name,
                "email": email,
                "phone": clean_str(observed.get("phone")),
                "title": clean_str(observed.get("title")),
                "source": self.source,
            },
        )
        log_event(
            "contact_created",
            run_id=self.run_id,
            source=self.source,
            contact_id=contact_id,
            company_id=company_id,
        )
        return ContactResolution(id=contact_id, created=True)


def company_observation(**values: Any) -> Dict[str, Any]:
    """Drop empty values so callers can pass every candidate field blindly."""
    return {k: v for k, v in values.items() if k in COMPANY_FIELDS and not _is_empty(v)}


def merge_first(*candidates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge observations where earlier dicts win; later ones only fill gaps."""
    out: Dict[str, Any] = {}
    for cand in candidates:
        for k, v in (cand or {}).items():
            if _is_empty(out.get(k)) and not _is_empty(v):
                out[k] = v
    return out
