from __future__ import annotations

import sqlite3
import time
import traceback
from dataclasses import asdict, dataclass, field
from importlib import import_module
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..adapters.sources.base import ListCandidate, ListPage, page_url
from ..core.budget import RunDeadline
from ..core.config import ConfigError, validate_source
from ..core.db import CursorState, Database, InsertError, VacancyRow
from ..core.dedup import Deduplicator, content_hash
from ..core.entities import EntityResolver, company_observation, merge_first
from ..core.extract import detail_main_text, pdf_to_text
from ..core.http import FetchError, HttpClient, SessionContext
from ..core.jsonld import DetailFields, parse_detail
from ..core.llm import AiExtractor, AiFields
from ..core.logging import log_error, log_event, log_warning
from ..core.schema import normalize_employment_type, parse_hours_range
from ..core.throttle import Throttle

IDLE = "idle"
PAGING = "paging"
ITEM_LOOP = "item_loop"
DONE = "done"
FAILED = "failed"

INSERTED = "inserted"
SKIPPED = "skipped"
ITEM_FAILED = "item_failed"

# List pages that answer with these are gone, not temporarily unavailable.
PAGE_GONE_STATUSES = (404, 410)


class ItemFailure(RuntimeError):
    pass


@dataclass
class ItemError:
    external_id: str
    title: Optional[str]
    message: str
    error_type: str = "ItemFailure"


@dataclass
class RunCursor:
    page: int
    total_pages: Optional[int] = None
    pages_done: int = 0


@dataclass
class RunSummary:
    source: str
    success: bool = False
    state: str = IDLE
    pages_processed: int = 0
    total_found: int = 0
    processed: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: int = 0
    companies_created: int = 0
    companies_updated: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    ai_calls: int = 0
    error_details: List[ItemError] = field(default_factory=list)
    resume_from_page: Optional[int] = None
    fatal_error: Optional[str] = None
    cancelled: bool = False
    caught_up: bool = False
    duration_sec: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _load_adapter(adapter_name: str):
    return import_module(f"vacancyfeed.adapters.sources.{adapter_name}")


def _status(result: Any) -> str:
    if result.ok:
        return "ok"
    return f"default:{result.reason}"


class VacancyAgent:
    """Runs one source: Idle -> Paging -> ItemLoop -> (Paging | Done), or Failed at startup."""

    def __init__(
        self,
        *,
        run_id: str,
        source_cfg: Dict[str, Any],
        db: Database,
        http: HttpClient,
        ai: AiExtractor,
        sleep: Callable[[float], None] = time.sleep,
        deadline: Optional[RunDeadline] = None,
    ) -> None:
        self.run_id = run_id
        self.source_cfg = source_cfg
        self.db = db
        self.http = http
        self.ai = ai
        self.sleep = sleep
        self.deadline = deadline
        self.name = str(source_cfg.get("name") or "<unnamed>") if isinstance(source_cfg, dict) else "<unnamed>"
        self.summary = RunSummary(source=self.name)
        self.session = SessionContext()

    # --- state ---
    def _enter(self, state: str, **fields: Any) -> None:
        self.summary.state = state
        log_event("source_state", run_id=self.run_id, source=self.name, state=state, **fields)

    def _fail(self, message: str, error_type: str) -> RunSummary:
        self.summary.success = False
        self.summary.fatal_error = message
        self.db.record_error(
            self.run_id,
            module="orchestrator",
            source=self.name,
            error_type=error_type,
            message=message,
        )
        log_error(
            "source_run_failed",
            run_id=self.run_id,
            source=self.name,
            error_type=error_type,
            error=message,
        )
        self._enter(FAILED)
        return self.summary

    # --- startup ---
    def _start(self) -> bool:
        try:
            cfg = validate_source(self.source_cfg)
            self.adapter = _load_adapter(cfg["adapter"])
            self.source_id = self.db.get_or_create_source(self.name, cfg["base_url"])
        except (ConfigError, ImportError, InsertError, sqlite3.Error) as ex:
            self._fail(str(ex), type(ex).__name__)
            return False

        self.cfg = cfg
        self.base_url = str(cfg["base_url"]).rstrip("/")
        self.dedup = Deduplicator(self.db, self.source_id)
        self.resolver = EntityResolver(self.db, source=self.name, run_id=self.run_id)
        self.page_throttle = Throttle.from_ms(cfg["delay_between_pages_ms"], sleep=self.sleep)
        self.detail_throttle = Throttle.from_ms(cfg["delay_between_details_ms"], sleep=self.sleep)
        self.ai_throttle = Throttle.from_ms(cfg["delay_between_ai_calls_ms"], sleep=self.sleep)
        return True

    # --- fetching ---
    def _fetch(self, url: str, *, binary: bool = False) -> Any:
        session = self.session if self.cfg["use_session_cookies"] else SessionContext()
        if binary:
            body, session = self.http.fetch_bytes(url, session)
        else:
            body, session = self.http.fetch(url, session)
        if self.cfg["use_session_cookies"]:
            self.session = session
        return body

    def _fetch_page(self, page: int) -> ListPage:
        url = page_url(self.base_url, self.cfg["list_path"], self.cfg["page_param"], page)
        self.page_throttle.wait()
        html = self._fetch(url)
        parsed = self.adapter.parse_list(html, base_url=self.base_url, page=page, source_cfg=self.cfg)
        log_event(
            "page_fetched",
            run_id=self.run_id,
            source=self.name,
            page=page,
            url=url,
            candidates=len(parsed.candidates),
            total_pages=parsed.total_pages,
            total_results=parsed.total_results,
        )
        return parsed

    def _fetch_detail(self, cand: ListCandidate) -> Tuple[DetailFields, str]:
        if not self.cfg["fetch_detail_pages"] or not cand.url:
            return DetailFields.empty("disabled"), ""
        self.detail_throttle.wait()
        try:
            html = self._fetch(cand.url)
        except FetchError as ex:
            log_warning(
                "detail_fetch_failed",
                run_id=self.run_id,
                source=self.name,
                external_id=cand.external_id,
                url=cand.url,
                error=str(ex)[:300],
            )
            return DetailFields.empty("fetch_failed"), ""
        return parse_detail(html), html

    def _extract_ai(self, text: str) -> AiFields:
        if self.cfg["skip_ai"]:
            return AiFields.empty("skipped")
        if len((text or "").strip()) >= self.ai.min_input_chars:
            self.ai_throttle.wait()
        return self.ai.extract(text)

    # --- items ---
    def _resolve_entities(
        self, company_name: str, observed: Dict[str, Any], ai: AiFields
    ) -> int:
        company = self.resolver.resolve_company(company_name, observed)
        if company.created:
            self.summary.companies_created += 1
        elif company.updated:
            self.summary.companies_updated += 1

        contact = self.resolver.resolve_contact(
            company.id,
            {
                "name": ai.contact_name,
                "email": ai.contact_email,
                "phone": ai.contact_phone,
                "title": ai.contact_title,
            },
        )
        if contact is not None and contact.created:
            self.summary.contacts_created += 1
        return company.id

    def _process_listed(self, cand: ListCandidate) -> VacancyRow:
        detail, detail_html = self._fetch_detail(cand)
        text = cand.description_text or ""
        if not text and detail_html:
            text = detail_main_text(detail_html).text
        ai = self._extract_ai(text)

        # Structured sources outrank the model's free-text reading.
        salary = detail.structured_salary() or cand.salary or ai.salary
        hours_min, hours_max = parse_hours_range(cand.working_hours or ai.working_hours)
        city = cand.city or detail.city
        company_name = cand.company_name or "Onbekend"

        observed = company_observation(
            **merge_first(
                {
                    "website": detail.company_website,
                    "street_address": detail.street_address,
                    "postal_code": detail.postal_code,
                    "city": detail.city,
                    "province": detail.province,
                    "logo_url": detail.logo_url,
                },
                {"city": cand.city, "location": cand.city},
                {
                    "website": ai.company_website,
                    "phone": ai.company_phone,
                    "email": ai.company_email,
                },
            )
        )
        company_id = self._resolve_entities(company_name, observed, ai)

        return VacancyRow(
            external_id=cand.external_id,
            source_id=self.source_id,
            company_id=company_id,
            title=cand.title or "Onbekende functie",
            description=cand.description_html,
            description_text=text or None,
            url=cand.url,
            city=city,
            province=detail.province,
            street_address=detail.street_address,
            postal_code=detail.postal_code,
            country=self.cfg["default_country"],
            latitude=cand.latitude,
            longitude=cand.longitude,
            employment_type=normalize_employment_type(cand.employment_type),
            salary=salary,
            working_hours_min=hours_min,
            working_hours_max=hours_max,
            requirements=ai.requirements,
            education_level=detail.education_level,
            work_field=detail.work_field,
            posted_at=detail.date_posted,
            expires_at=detail.valid_through,
            content_hash=content_hash(cand.title or "", company_name, city or "", cand.url or ""),
            detail_status=_status(detail),
            ai_status=_status(ai),
            run_id=self.run_id,
        )

    def _process_document(self, cand: ListCandidate) -> VacancyRow:
        self.detail_throttle.wait()
        data = self._fetch(cand.document_url or cand.url, binary=True)
        extracted = pdf_to_text(data)
        min_chars = int(self.cfg["min_document_chars"])
        if len(extracted.text) < min_chars:
            raise ItemFailure(
                f"document text too short ({len(extracted.text)} < {min_chars} chars)"
                + (f": {', '.join(extracted.warnings)}" if extracted.warnings else "")
            )

        self.ai_throttle.wait()
        posting = self.ai.extract_posting(extracted.text)
        if not posting.ok:
            raise ItemFailure(f"document extraction failed: {posting.reason}")
        cand.title = posting.title

        hours_min, hours_max = parse_hours_range(posting.working_hours)
        observed = company_observation(
            city=posting.city,
            location=posting.location,
            website=posting.company_website,
            phone=posting.company_phone,
            email=posting.company_email,
        )
        company_id = self._resolve_entities(posting.company_name, observed, posting)

        return VacancyRow(
            external_id=cand.external_id,
            source_id=self.source_id,
            company_id=company_id,
            title=posting.title,
            description=posting.description,
            description_text=extracted.text,
            url=cand.url,
            city=posting.city,
            country=self.cfg["default_country"],
            salary=posting.salary,
            working_hours_min=hours_min,
            working_hours_max=hours_max,
            requirements=posting.requirements,
            content_hash=content_hash(
                posting.title or "", posting.company_name or "", posting.city or "", cand.url or ""
            ),
            detail_status="document",
            ai_status=_status(posting),
            run_id=self.run_id,
        )

    def _process_item(self, cand: ListCandidate) -> str:
        self.summary.processed += 1
        if self.dedup.exists(cand.external_id):
            self.summary.skipped += 1
            log_event(
                "vacancy_skipped_duplicate",
                run_id=self.run_id,
                source=self.name,
                external_id=cand.external_id,
            )
            return SKIPPED

        calls_before = self.ai.budget.calls_used
        try:
            if cand.document_url:
                row = self._process_document(cand)
            else:
                row = self._process_listed(cand)
            if self.dedup.seen_hash(row.content_hash):
                # Same posting under a new id; stored anyway, flagged for review.
                log_event(
                    "vacancy_content_hash_seen",
                    run_id=self.run_id,
                    source=self.name,
                    external_id=row.external_id,
                    content_hash=row.content_hash,
                )
            self.db.insert_vacancy(row)
        except Exception as ex:
            # One posting never aborts the run; the error is kept for triage.
            self._item_error(cand, ex)
            return ITEM_FAILED
        finally:
            self.summary.ai_calls += self.ai.budget.calls_used - calls_before

        self.summary.inserted += 1
        log_event(
            "vacancy_inserted",
            run_id=self.run_id,
            source=self.name,
            external_id=row.external_id,
            title=row.title,
            company_id=row.company_id,
            detail_status=row.detail_status,
            ai_status=row.ai_status,
        )
        return INSERTED

    def _item_error(self, cand: ListCandidate, ex: Exception) -> None:
        self.summary.errors += 1
        message = str(ex) or repr(ex)
        self.summary.error_details.append(
            ItemError(
                external_id=cand.external_id,
                title=cand.title,
                message=message[:500],
                error_type=type(ex).__name__,
            )
        )
        self.db.record_error(
            self.run_id,
            module="vacancy_agent",
            source=self.name,
            error_type=type(ex).__name__,
            message=traceback.format_exc() if not isinstance(ex, (ItemFailure, FetchError)) else message,
            external_id=cand.external_id,
            title=cand.title,
        )
        log_error(
            "vacancy_item_failed",
            run_id=self.run_id,
            source=self.name,
            external_id=cand.external_id,
            title=cand.title,
            error_type=type(ex).__name__,
            error=message[:300],
        )

    # --- paging ---
    def _stop(
        self,
        resume_page: Optional[int],
        total_pages: Optional[int],
        *,
        success: bool,
        failures: int = 0,
    ) -> None:
        if resume_page is None:
            self.db.clear_cursor(self.source_id)
        else:
            self.db.set_cursor(self.source_id, resume_page, total_pages, failures=failures)
        self.summary.resume_from_page = resume_page
        self.summary.success = success

    def _cancelled(self, cursor: RunCursor, stored: Optional[CursorState]) -> bool:
        if self.deadline is None or not self.deadline.expired():
            return False
        # Items already stored on this page are skipped as duplicates on resume.
        self.summary.cancelled = True
        log_warning(
            "source_run_cancelled",
            run_id=self.run_id,
            source=self.name,
            page=cursor.page,
            reason=self.deadline.reason,
        )
        failures = 0
        if stored is not None and cursor.pages_done == 0 and stored.next_page == cursor.page:
            failures = stored.failures
        self._stop(cursor.page, cursor.total_pages, success=False, failures=failures)
        return True

    def _page_failed(self, cursor: RunCursor, ex: FetchError, stored: Optional[CursorState]) -> None:
        failures = 1
        if stored is not None and stored.next_page == cursor.page:
            failures = stored.failures + 1
        self.db.record_error(
            self.run_id,
            module="orchestrator",
            source=self.name,
            error_type=type(ex).__name__,
            message=str(ex),
        )
        log_error(
            "page_fetch_failed",
            run_id=self.run_id,
            source=self.name,
            page=cursor.page,
            status=ex.status,
            failures=failures,
            error=str(ex)[:300],
        )
        if ex.status in PAGE_GONE_STATUSES and failures >= self.cfg["max_page_failures"]:
            # The listing shrank below this page; the next run starts over.
            log_warning(
                "cursor_abandoned",
                run_id=self.run_id,
                source=self.name,
                page=cursor.page,
                status=ex.status,
                failures=failures,
            )
            self._stop(None, None, success=False)
            return
        # Keep the failed page as the resume point.
        self._stop(cursor.page, cursor.total_pages, success=False, failures=failures)

    def _page_loop(self) -> None:
        stored = self.db.get_cursor_state(self.source_id)
        if stored is not None:
            cursor = RunCursor(page=stored.next_page, total_pages=stored.total_pages)
        else:
            cursor = RunCursor(page=self.cfg["start_page"])
        max_pages = self.cfg["max_pages_per_run"]
        # A resumed backfill keeps walking older pages whatever it finds there.
        skip_limit = 0 if stored is not None else self.cfg["consecutive_skip_limit"]
        skip_streak = 0

        while True:
            if self._cancelled(cursor, stored):
                return
            self._enter(PAGING, page=cursor.page)
            try:
                listing = self._fetch_page(cursor.page)
            except FetchError as ex:
                self._page_failed(cursor, ex, stored)
                return

            if listing.total_known or cursor.total_pages is None:
                cursor.total_pages = listing.total_pages
            else:
                log_warning(
                    "page_total_missing",
                    run_id=self.run_id,
                    source=self.name,
                    page=cursor.page,
                    total_pages=cursor.total_pages,
                )
            cursor.pages_done += 1
            self.summary.pages_processed += 1
            self.summary.total_found += len(listing.candidates)

            self._enter(ITEM_LOOP, page=cursor.page, candidates=len(listing.candidates))
            for cand in listing.candidates:
                if self._cancelled(cursor, stored):
                    return
                if self._process_item(cand) == SKIPPED:
                    skip_streak += 1
                else:
                    skip_streak = 0
                if skip_limit and skip_streak >= skip_limit:
                    self.summary.caught_up = True
                    log_event(
                        "source_caught_up",
                        run_id=self.run_id,
                        source=self.name,
                        page=cursor.page,
                        consecutive_skips=skip_streak,
                    )
                    self._stop(None, None, success=True)
                    return

            next_page = cursor.page + 1
            if next_page > cursor.total_pages:
                self._stop(None, None, success=True)
                return
            if cursor.pages_done >= max_pages:
                self._stop(next_page, cursor.total_pages, success=True)
                return
            cursor.page = next_page

    def run(self) -> RunSummary:
        started = time.perf_counter()
        self.db.create_run(self.run_id, self.name)
        self._enter(IDLE)
        if self._start():
            log_event(
                "source_run_started",
                run_id=self.run_id,
                source=self.name,
                adapter=self.cfg["adapter"],
                source_id=self.source_id,
            )
            try:
                self._page_loop()
            except Exception as ex:
                # Counts gathered so far stay in the summary and the runs table.
                self._fail(f"{type(ex).__name__}: {ex}", type(ex).__name__)
            else:
                self._enter(DONE, success=self.summary.success)

        self.summary.duration_sec = round(time.perf_counter() - started, 3)
        self.db.finish_run(
            self.run_id, self.name, ok=self.summary.success, stats=self.summary.to_dict()
        )
        log_event("source_run_done", run_id=self.run_id, **self.summary.to_dict())
        return self.summary


def run_source(
    *,
    run_id: str,
    source_cfg: Dict[str, Any],
    db: Database,
    http: HttpClient,
    ai: AiExtractor,
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[RunDeadline] = None,
) -> RunSummary:
    agent = VacancyAgent(
        run_id=run_id,
        source_cfg=source_cfg,
        db=db,
        http=http,
        ai=ai,
        sleep=sleep,
        deadline=deadline,
    )
    return agent.run()


def run_vacancy_agent(
    *,
    run_id: str,
    cfg: Dict[str, Any],
    db: Database,
    http: HttpClient,
    ai: AiExtractor,
    only: Optional[List[str]] = None,
    deadline: Optional[RunDeadline] = None,
) -> List[RunSummary]:
    summaries: List[RunSummary] = []
    for source_cfg in cfg.get("sources", []):
        name = source_cfg.get("name") if isinstance(source_cfg, dict) else None
        if only and name not in only:
            continue
        if deadline is not None and deadline.expired():
            log_warning(
                "source_not_started", run_id=run_id, source=name, reason=deadline.reason
            )
            summaries.append(RunSummary(source=str(name), cancelled=True))
            continue
        try:
            summaries.append(
                run_source(
                    run_id=run_id,
                    source_cfg=source_cfg,
                    db=db,
                    http=http,
                    ai=ai,
                    deadline=deadline,
                )
            )
        except Exception as ex:
            tb = traceback.format_exc()
            db.record_error(
                run_id,
                module="vacancy_agent",
                source=str(name),
                error_type=type(ex).__name__,
                message=tb,
            )
            log_error("vacancy_agent_source_failed", run_id=run_id, source=name, error=repr(ex))
            summaries.append(
                RunSummary(source=str(name), success=False, state=FAILED, fatal_error=repr(ex))
            )
    return summaries
