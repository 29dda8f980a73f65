#!/usr/bin/env python3
from __future__ import annotations

import argparse
import signal
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT / "src"))

from zoneinfo import ZoneInfo

from vacancyfeed.agents.vacancy_agent import RunSummary, run_vacancy_agent
from vacancyfeed.core.budget import Budget, RunDeadline
from vacancyfeed.core.config import load_config, source_names
from vacancyfeed.core.db import Database
from vacancyfeed.core.db_maintenance import maintenance_db
from vacancyfeed.core.http import HttpClient, RetryPolicy
from vacancyfeed.core.llm import AiExtractor
from vacancyfeed.core.llm_providers.registry import list_providers
from vacancyfeed.core.logging import log_error, log_event, log_warning, setup_logging


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Scrape vacancy sources into the local state database")
    ap.add_argument("--config", default=str(ROOT / "config.yaml"), help="Path to config.yaml")
    ap.add_argument(
        "--only",
        action="append",
        default=[],
        help="Run only the named source (repeatable)",
    )
    ap.add_argument(
        "--max-pages",
        type=int,
        default=0,
        help="Override max_pages_per_run for every source (0=use config)",
    )
    ap.add_argument(
        "--reset-cursor",
        action="store_true",
        help="Ignore stored resume cursors and start from start_page",
    )
    ap.add_argument(
        "--timeout-sec",
        type=int,
        default=-1,
        help="Stop after this many seconds, keeping resume cursors (-1=use config, 0=no limit)",
    )
    ap.add_argument("--skip-maintenance", action="store_true", help="Do not prune/VACUUM the db")
    return ap.parse_args()


def _make_run_id(tz: ZoneInfo, log_dir: str) -> str:
    base = datetime.now(tz).strftime("%Y%m%d_%H%M%S")
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    candidate = base
    idx = 1
    while (Path(log_dir) / f"run_{candidate}.jsonl").exists():
        candidate = f"{base}_{idx:02d}"
        idx += 1
    return candidate


def _totals(summaries: List[RunSummary]) -> Dict[str, Any]:
    keys = [
        "pages_processed",
        "total_found",
        "processed",
        "inserted",
        "skipped",
        "errors",
        "companies_created",
        "companies_updated",
        "contacts_created",
        "contacts_updated",
        "ai_calls",
    ]
    return {k: sum(int(getattr(s, k)) for s in summaries) for k in keys}


def main() -> int:
    args = parse_args()
    try:
        cfg = load_config(args.config)
    except Exception as e:
        print(f"Failed to load config: {e}")
        return 2

    if args.max_pages > 0:
        for src in cfg["sources"]:
            if isinstance(src, dict):
                src["max_pages_per_run"] = args.max_pages

    runtime = cfg["runtime"]
    tz = ZoneInfo(runtime.get("timezone", "Europe/Amsterdam"))
    start_time = time.perf_counter()

    run_id = _make_run_id(tz, runtime["log_dir"])
    setup_logging(run_id, log_dir=runtime["log_dir"], level=runtime["log_level"])

    llm_cfg = cfg["llm"]
    if llm_cfg["provider"] not in list_providers():
        log_warning("llm_provider_unknown", run_id=run_id, provider=llm_cfg["provider"], known=list_providers())

    db_path = runtime["state_db_path"]
    db = Database(db_path)

    if args.reset_cursor:
        for name in source_names(cfg):
            source_id = db.find_source_id(name)
            if source_id is not None:
                db.clear_cursor(source_id)
                log_event("cursor_reset", run_id=run_id, source=name)

    http = HttpClient(
        user_agent=runtime["user_agent"],
        timeout_sec=int(runtime["http_timeout_sec"]),
        policy=RetryPolicy.from_config(cfg["retry"]),
    )
    budget = Budget(max_calls=int(llm_cfg["max_calls_per_run"]))
    ai = AiExtractor(llm_cfg, budget=budget, run_id=run_id)

    timeout = args.timeout_sec if args.timeout_sec >= 0 else int(runtime["run_timeout_sec"])
    deadline = RunDeadline(seconds=timeout or None)

    def _graceful_shutdown(signum=None, frame=None):
        log_warning("shutdown_requested", run_id=run_id, signal=signum)
        deadline.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    summaries: List[RunSummary] = []
    error_count = 0
    try:
        summaries = run_vacancy_agent(
            run_id=run_id,
            cfg=cfg,
            db=db,
            http=http,
            ai=ai,
            only=args.only or None,
            deadline=deadline,
        )
    except Exception as ex:
        error_count += 1
        db.record_error(
            run_id,
            module="main",
            source="pipeline",
            error_type=type(ex).__name__,
            message=traceback.format_exc(),
        )
        log_error("pipeline_failed", run_id=run_id, error=repr(ex))

    ok = error_count == 0 and all(s.success for s in summaries)
    log_event(
        "run_summary",
        run_id=run_id,
        ok=ok,
        sources=[s.to_dict() for s in summaries],
        totals=_totals(summaries),
        llm_calls=budget.calls_used,
        llm_usage_by_provider=ai.usage_by_provider,
        duration_sec=round(time.perf_counter() - start_time, 3),
    )
    db.close()

    # Maintenance (after closing the main DB connection to avoid locks)
    if not args.skip_maintenance:
        try:
            pruned = maintenance_db(db_path, keep_error_days=int(runtime["keep_error_days"]))
            log_event("db_maintenance_done", run_id=run_id, **pruned)
        except Exception as ex:
            log_error("db_maintenance_failed", run_id=run_id, error=repr(ex))

    for s in summaries:
        status = "ok" if s.success else "FAILED"
        resume = f", resume at page {s.resume_from_page}" if s.resume_from_page else ""
        if s.cancelled:
            resume += " (stopped early)"
        print(
            f"[{status}] {s.source}: pages={s.pages_processed} found={s.total_found} "
            f"inserted={s.inserted} skipped={s.skipped} errors={s.errors}{resume}"
        )
        if s.fatal_error:
            print(f"    fatal: {s.fatal_error}")

    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
