from __future__ import annotations

import html as htmlmod
import json
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterable, Optional, Tuple

from bs4 import BeautifulSoup

from .schema import format_salary, normalize_date
from .utils import clean_str, safe_float


@dataclass
class DetailFields:
    """Structured fields from a detail page's JobPosting block.

    ``status`` is "ok" when a JobPosting was found, otherwise "default" with
    ``reason`` naming why every field is None.
    """

    status: str = "default"
    reason: Optional[str] = None
    date_posted: Optional[str] = None
    valid_through: Optional[str] = None
    province: Optional[str] = None
    work_field: Optional[str] = None
    education_level: Optional[str] = None
    street_address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    salary_period: Optional[str] = None
    logo_url: Optional[str] = None
    company_website: Optional[str] = None

    @classmethod
    def empty(cls, reason: str) -> "DetailFields":
        return cls(status="default", reason=reason)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def structured_salary(self) -> Optional[str]:
        return format_salary(self.salary_min, self.salary_max, self.salary_period)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _iter_jsonld_objects(raw: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(raw, dict):
        if isinstance(raw.get("@graph"), list):
            for n in raw["@graph"]:
                if isinstance(n, dict):
                    yield n
            return
        yield raw
        return
    if isinstance(raw, list):
        for n in raw:
            yield from _iter_jsonld_objects(n)


def _is_jobposting(obj: Dict[str, Any]) -> bool:
    t = obj.get("@type") or obj.get("type")
    if isinstance(t, list):
        return any(str(x).lower() == "jobposting" for x in t)
    return str(t or "").lower() == "jobposting"


def find_jobposting(html: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """Return (JobPosting object, reason). Reason is "" when found."""
    soup = BeautifulSoup(html, "html.parser")
    scripts = soup.find_all("script", attrs={"type": "application/ld+json"})
    if not scripts:
        return None, "no_jsonld"
    malformed = 0
    for s in scripts:
        raw = s.string or s.get_text() or ""
        if not raw.strip():
            continue
        try:
            data = json.loads(htmlmod.unescape(raw))
        except json.JSONDecodeError:
            malformed += 1
            continue
        for obj in _iter_jsonld_objects(data):
            if _is_jobposting(obj):
                return obj, ""
    if malformed == len(scripts):
        return None, "malformed"
    return None, "no_jobposting"


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _dict(value: Any) -> Dict[str, Any]:
    value = _first(value)
    return value if isinstance(value, dict) else {}


def _education(posting: Dict[str, Any]) -> Optional[str]:
    quals = _dict(posting.get("qualifications"))
    level = clean_str(quals.get("educationalLevel"))
    if level:
        return level
    req = _first(posting.get("educationRequirements"))
    if isinstance(req, dict):
        return clean_str(req.get("credentialCategory"))
    return clean_str(req)


def _logo(org: Dict[str, Any]) -> Optional[str]:
    logo = _first(org.get("logo"))
    if isinstance(logo, dict):
        return clean_str(logo.get("url") or logo.get("contentUrl"))
    return clean_str(logo)


def _website(org: Dict[str, Any]) -> Optional[str]:
    for key in ("sameAs", "url"):
        val = clean_str(_first(org.get(key)))
        if val and val.startswith("http"):
            return val
    return None


def _salary(posting: Dict[str, Any]) -> Tuple[Optional[float], Optional[float], Optional[str]]:
    base = _dict(posting.get("baseSalary"))
    value = base.get("value")
    if isinstance(value, dict):
        lo = safe_float(value.get("minValue"))
        if lo is None:
            lo = safe_float(value.get("value"))
        hi = safe_float(value.get("maxValue"))
        period = clean_str(value.get("unitText")) or clean_str(base.get("unitText"))
    else:
        lo = safe_float(value)
        hi = None
        period = clean_str(base.get("unitText"))
    if lo is None and hi is None:
        period = None
    return lo, hi, period


def parse_detail(html: str) -> DetailFields:
    """Best-effort; never raises."""
    if not html or not html.strip():
        return DetailFields.empty("no_html")
    posting, reason = find_jobposting(html)
    if posting is None:
        return DetailFields.empty(reason)
    try:
        return _build_fields(posting)
    except (AttributeError, TypeError, ValueError):
        return DetailFields.empty("malformed")


def _build_fields(posting: Dict[str, Any]) -> DetailFields:
    location = _dict(posting.get("jobLocation"))
    address = _dict(location.get("address"))
    org = _dict(posting.get("hiringOrganization"))
    if not address:
        address = _dict(org.get("address"))
    salary_min, salary_max, salary_period = _salary(posting)

    return DetailFields(
        status="ok",
        date_posted=normalize_date(posting.get("datePosted")),
        valid_through=normalize_date(posting.get("validThrough")),
        province=clean_str(_dict(location.get("address")).get("addressRegion")),
        work_field=clean_str(_first(posting.get("occupationalCategory"))),
        education_level=_education(posting),
        street_address=clean_str(address.get("streetAddress")),
        postal_code=clean_str(address.get("postalCode")),
        city=clean_str(address.get("addressLocality")),
        salary_min=salary_min,
        salary_max=salary_max,
        salary_period=salary_period,
        logo_url=_logo(org),
        company_website=_website(org),
    )
