from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import ValidationError
from jsonschema import validate as js_validate

from .budget import Budget
from .llm_providers.registry import get_provider
from .logging import log_event
from .text_cleaner import truncate_text
from .utils import clean_str, safe_int

_NULLABLE_TEXT = {"type": ["string", "number", "null"]}

AI_FIELDS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "salary": _NULLABLE_TEXT,
        "working_hours": _NULLABLE_TEXT,
        "requirements": {
            "type": ["array", "null"],
            "items": {"type": "string"},
        },
        "company_website": _NULLABLE_TEXT,
        "company_phone": _NULLABLE_TEXT,
        "company_email": _NULLABLE_TEXT,
        "contact_name": _NULLABLE_TEXT,
        "contact_email": _NULLABLE_TEXT,
        "contact_phone": _NULLABLE_TEXT,
        "contact_title": _NULLABLE_TEXT,
    },
}

AI_POSTING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["title", "company_name"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "company_name": {"type": "string", "minLength": 1},
        "location": _NULLABLE_TEXT,
        "city": _NULLABLE_TEXT,
        "description": _NULLABLE_TEXT,
        **AI_FIELDS_SCHEMA["properties"],
    },
}

FIELDS_SYSTEM_PROMPT = """Je haalt gestructureerde gegevens uit Nederlandse vacatureteksten.
Antwoord uitsluitend met een JSON-object met precies deze sleutels:
- salary: salarisindicatie als tekst, bijvoorbeeld "€ 2.800 - € 3.400 per maand"
- working_hours: uren per week als tekst, bijvoorbeeld "32-40"
- requirements: lijst van maximaal 5 korte functie-eisen
- company_website, company_phone, company_email: gegevens van de werkgever
- contact_name, contact_email, contact_phone, contact_title: de contactpersoon voor deze vacature
Gebruik null als een gegeven niet in de tekst staat. Verzin geen gegevens."""

POSTING_SYSTEM_PROMPT = """Je zet de tekst van een vacature (uit een PDF) om naar JSON.
Antwoord uitsluitend met een JSON-object met deze sleutels:
- title: functietitel (verplicht)
- company_name: naam van de werkgever (verplicht)
- location, city: werklocatie en plaatsnaam
- salary: salarisindicatie als tekst
- description: korte samenvatting van maximaal 500 tekens
- requirements: lijst van maximaal 5 korte functie-eisen
- working_hours: uren per week als tekst
- company_website, company_phone, company_email
- contact_name, contact_email, contact_phone, contact_title
Gebruik null als een gegeven niet in de tekst staat. Verzin geen gegevens."""


@dataclass
class AiFields:
    """Best-effort fields from free text; status "default" means all-None."""

    status: str = "default"
    reason: Optional[str] = None
    salary: Optional[str] = None
    working_hours: Optional[str] = None
    requirements: List[str] = field(default_factory=list)
    company_website: Optional[str] = None
    company_phone: Optional[str] = None
    company_email: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_title: Optional[str] = None
    provider: Optional[str] = None

    @classmethod
    def empty(cls, reason: str) -> "AiFields":
        return cls(status="default", reason=reason)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class AiPosting(AiFields):
    title: Optional[str] = None
    company_name: Optional[str] = None
    location: Optional[str] = None
    city: Optional[str] = None
    description: Optional[str] = None


def _clean_email(value: Any) -> Optional[str]:
    v = clean_str(value)
    if not v or "@" not in v or " " in v:
        return None
    return v.lower()


def _requirements(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    out = [clean_str(v) for v in value]
    return [v for v in out if v][:limit]


def _common_kwargs(obj: Dict[str, Any], max_requirements: int) -> Dict[str, Any]:
    return dict(
        salary=clean_str(obj.get("salary")),
        working_hours=clean_str(obj.get("working_hours")),
        requirements=_requirements(obj.get("requirements"), max_requirements),
        company_website=clean_str(obj.get("company_website")),
        company_phone=clean_str(obj.get("company_phone")),
        company_email=_clean_email(obj.get("company_email")),
        contact_name=clean_str(obj.get("contact_name")),
        contact_email=_clean_email(obj.get("contact_email")),
        contact_phone=clean_str(obj.get("contact_phone")),
        contact_title=clean_str(obj.get("contact_title")),
    )


def _preview(text: str, limit: int = 240) -> str:
    if not text:
        return ""
    t = text.replace("\n", "\\n")
    if len(t) <= limit:
        return t
    return t[:limit] + "…"


def _extract_first_json_object(text: str) -> str:
    """Extract the first JSON object substring from a blob of text.

    Providers sometimes ignore "JSON only" and wrap the object in markdown
    fences or surrounding prose.
    """
    if not text:
        return ""

    m = re.search(r"```(?:json)?\s*(.*?)\s*```", text, flags=re.IGNORECASE | re.DOTALL)
    if m:
        cand = (m.group(1) or "").strip()
        if cand.startswith("{") and cand.endswith("}"):
            return cand

    start = text.find("{")
    if start < 0:
        return ""

    # Bracket-balance scan with string/escape awareness.
    depth = 0
    in_str = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1].strip()
    return ""


def _parse_json_object(content: str) -> Optional[Dict[str, Any]]:
    for cand in (content, _extract_first_json_object(content)):
        if not cand:
            continue
        try:
            obj = json.loads(cand)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


class AiExtractor:
    """Chat-completion extraction with a fixed schema and graceful fallback.

    Never raises for provider trouble: every failure mode maps to the
    default result with a reason.
    """

    def __init__(self, cfg: Dict[str, Any], *, budget: Budget, run_id: str = "") -> None:
        self.budget = budget
        self.run_id = run_id
        self.provider = (cfg.get("provider") or "mistral").lower()
        self.fallback_providers = list(cfg.get("fallback_providers") or [])
        self.model = cfg.get("model", "mistral-small-latest")
        self.temperature = float(cfg.get("temperature", 0))
        self.timeout_sec = int(cfg.get("timeout_sec", 30))
        self.min_input_chars = int(cfg.get("min_input_chars", 50))
        self.max_input_chars = int(cfg.get("max_input_chars", 4000))
        self.max_requirements = int(cfg.get("max_requirements", 5))
        self.provider_options = cfg.get("provider_options") or {}
        self.usage_by_provider: Dict[str, Dict[str, Any]] = {}

    def _provider_chain(self) -> List[str]:
        chain = [self.provider] + [
            p.lower() for p in self.fallback_providers if p and p.lower() != self.provider
        ]
        return list(dict.fromkeys(chain))

    def _options(self, provider: str) -> Dict[str, Any]:
        opts = self.provider_options.get(provider) if isinstance(self.provider_options, dict) else None
        return dict(opts) if isinstance(opts, dict) else {}

    def _bump_usage(self, provider: str, model: str, usage: Dict[str, int]) -> None:
        entry = self.usage_by_provider.setdefault(
            provider,
            {"calls": 0, "input_tokens": 0, "output_tokens": 0, "total_tokens": 0, "models": {}},
        )
        entry["calls"] += 1
        entry["input_tokens"] += safe_int((usage or {}).get("input"))
        entry["output_tokens"] += safe_int((usage or {}).get("output"))
        entry["total_tokens"] += safe_int((usage or {}).get("total"))
        entry["models"][model] = int(entry["models"].get(model, 0)) + 1

    def _call(
        self, text: str, *, system_prompt: str, schema: Dict[str, Any], kind: str
    ) -> Tuple[Optional[Dict[str, Any]], str, str]:
        """Return (validated object, reason, provider name)."""
        text = (text or "").strip()
        if len(text) < self.min_input_chars:
            return None, "too_short", ""
        if not self.budget.can_call():
            log_event("ai_extract_skipped", run_id=self.run_id, kind=kind, reason="budget_exhausted")
            return None, "budget_exhausted", ""

        user_prompt = truncate_text(text, self.max_input_chars)
        reason = "missing_credentials"
        consumed = False
        for provider_name in self._provider_chain():
            provider = get_provider(provider_name)
            if not provider:
                continue
            opts = self._options(provider_name)
            if not provider.ready(opts):
                continue
            if not consumed:
                self.budget.consume_call(1)
                consumed = True
            model = str(opts.get("model", self.model))
            try:
                content, usage = provider.call_json(
                    model=model,
                    temperature=self.temperature,
                    timeout_sec=self.timeout_sec,
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    response_schema=schema,
                    cfg=opts,
                )
            except Exception as exc:
                # Any provider failure (HTTP, SDK, timeout) falls through to the next provider.
                reason = "provider_error"
                log_event(
                    "llm_provider_failed",
                    run_id=self.run_id,
                    kind=kind,
                    provider=provider_name,
                    model=model,
                    error_type=type(exc).__name__,
                    error=str(exc)[:300],
                )
                continue

            if not content:
                reason = "empty_content"
                log_event("llm_provider_empty", run_id=self.run_id, kind=kind, provider=provider_name)
                continue
            obj = _parse_json_object(content)
            if obj is None:
                reason = "invalid_json"
                log_event(
                    "llm_provider_non_json",
                    run_id=self.run_id,
                    kind=kind,
                    provider=provider_name,
                    content_preview=_preview(content),
                )
                continue
            try:
                js_validate(obj, schema)
            except ValidationError as exc:
                reason = "schema_error"
                log_event(
                    "llm_provider_schema_error",
                    run_id=self.run_id,
                    kind=kind,
                    provider=provider_name,
                    error=str(exc.message)[:200],
                    content_preview=_preview(content),
                )
                continue
            self._bump_usage(provider_name, model, usage)
            return obj, "", provider_name

        if reason == "missing_credentials":
            log_event("ai_extract_skipped", run_id=self.run_id, kind=kind, reason=reason)
        return None, reason, ""

    def extract(self, text: str) -> AiFields:
        obj, reason, provider = self._call(
            text, system_prompt=FIELDS_SYSTEM_PROMPT, schema=AI_FIELDS_SCHEMA, kind="fields"
        )
        if obj is None:
            return AiFields.empty(reason)
        return AiFields(
            status="ok", provider=provider, **_common_kwargs(obj, self.max_requirements)
        )

    def extract_posting(self, text: str) -> AiPosting:
        obj, reason, provider = self._call(
            text, system_prompt=POSTING_SYSTEM_PROMPT, schema=AI_POSTING_SCHEMA, kind="posting"
        )
        if obj is None:
            return AiPosting.empty(reason)
        description = clean_str(obj.get("description"))
        return AiPosting(
            status="ok",
            provider=provider,
            title=clean_str(obj.get("title")),
            company_name=clean_str(obj.get("company_name")),
            location=clean_str(obj.get("location")),
            city=clean_str(obj.get("city")),
            description=description[:500] if description else None,
            **_common_kwargs(obj, self.max_requirements),
        )
