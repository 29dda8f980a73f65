from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .utils import now_utc_iso

SCHEMA_SQL = """

CREATE TABLE IF NOT EXISTS job_sources (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  base_url TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS companies (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  normalized_name TEXT NOT NULL UNIQUE,
  website TEXT,
  phone TEXT,
  email TEXT,
  city TEXT,
  location TEXT,
  street_address TEXT,
  postal_code TEXT,
  province TEXT,
  logo_url TEXT,
  status TEXT,
  enrichment_status TEXT,
  qualification_status TEXT,
  source TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT
);

CREATE TABLE IF NOT EXISTS contacts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  company_id INTEGER REFERENCES companies(id),
  name TEXT,
  first_name TEXT,
  last_name TEXT,
  email TEXT,
  phone TEXT,
  title TEXT,
  source TEXT,
  qualification_status TEXT,
  created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);

CREATE TABLE IF NOT EXISTS vacancies (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  external_id TEXT NOT NULL,
  source_id INTEGER NOT NULL REFERENCES job_sources(id),
  company_id INTEGER REFERENCES companies(id),
  title TEXT NOT NULL,
  description TEXT,
  description_text TEXT,
  url TEXT,
  city TEXT,
  province TEXT,
  street_address TEXT,
  postal_code TEXT,
  country TEXT,
  latitude REAL,
  longitude REAL,
  employment_type TEXT,
  salary TEXT,
  working_hours_min INTEGER,
  working_hours_max INTEGER,
  requirements TEXT,
  education_level TEXT,
  work_field TEXT,
  posted_at TEXT,
  expires_at TEXT,
  content_hash TEXT,
  status TEXT NOT NULL DEFAULT 'new',
  review_status TEXT NOT NULL DEFAULT 'pending',
  detail_status TEXT,
  ai_status TEXT,
  run_id TEXT,
  scraped_at TEXT NOT NULL,
  UNIQUE(external_id, source_id)
);
CREATE INDEX IF NOT EXISTS idx_vacancies_content_hash ON vacancies(content_hash);

CREATE TABLE IF NOT EXISTS scrape_cursors (
  source_id INTEGER PRIMARY KEY REFERENCES job_sources(id),
  next_page INTEGER NOT NULL,
  total_pages INTEGER,
  failures INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
  run_id TEXT NOT NULL,
  source TEXT NOT NULL,
  started_at TEXT NOT NULL,
  finished_at TEXT,
  ok INTEGER NOT NULL,
  duration_sec REAL,
  pages_processed INTEGER,
  total_found INTEGER,
  processed INTEGER,
  inserted INTEGER,
  skipped INTEGER,
  errors INTEGER,
  companies_created INTEGER,
  companies_updated INTEGER,
  contacts_created INTEGER,
  contacts_updated INTEGER,
  ai_calls INTEGER,
  resume_from_page INTEGER,
  fatal_error TEXT,
  cancelled INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (run_id, source)
);

CREATE TABLE IF NOT EXISTS run_errors (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL,
  module TEXT,
  source TEXT,
  external_id TEXT,
  title TEXT,
  error_type TEXT,
  message TEXT,
  created_at TEXT NOT NULL
);
"""

COMPANY_FIELDS = (
    "website",
    "phone",
    "email",
    "city",
    "location",
    "street_address",
    "postal_code",
    "province",
    "logo_url",
)

CONTACT_FIELDS = ("name", "first_name", "last_name", "email", "phone", "title")


class InsertError(RuntimeError):
    pass


@dataclass
class VacancyRow:
    external_id: str
    source_id: int
    title: str
    company_id: Optional[int] = None
    description: Optional[str] = None
    description_text: Optional[str] = None
    url: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    street_address: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    employment_type: Optional[str] = None
    salary: Optional[str] = None
    working_hours_min: Optional[int] = None
    working_hours_max: Optional[int] = None
    requirements: List[str] = field(default_factory=list)
    education_level: Optional[str] = None
    work_field: Optional[str] = None
    posted_at: Optional[str] = None
    expires_at: Optional[str] = None
    content_hash: Optional[str] = None
    status: str = "new"
    review_status: str = "pending"
    detail_status: Optional[str] = None
    ai_status: Optional[str] = None
    run_id: Optional[str] = None


@dataclass
class CursorState:
    next_page: int
    total_pages: Optional[int] = None
    # Consecutive failed fetches of next_page across runs.
    failures: int = 0


class Database:
    def __init__(self, path: str) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.conn = sqlite3.connect(path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=DELETE;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        # Older state files predate these columns.
        self._ensure_column("vacancies", "detail_status", "TEXT")
        self._ensure_column("vacancies", "ai_status", "TEXT")
        self._ensure_column("companies", "province", "TEXT")
        self._ensure_column("scrape_cursors", "failures", "INTEGER NOT NULL DEFAULT 0")
        self._ensure_column("runs", "cancelled", "INTEGER NOT NULL DEFAULT 0")

    def close(self) -> None:
        self.conn.close()

    def _columns(self, table: str) -> List[str]:
        return [r["name"] for r in self.conn.execute(f"PRAGMA table_info({table})").fetchall()]

    def _ensure_column(self, table: str, column: str, decl: str) -> None:
        if column not in self._columns(table):
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
            self.conn.commit()

    # --- sources ---
    def find_source_id(self, name: str) -> Optional[int]:
        row = self.conn.execute("SELECT id FROM job_sources WHERE name=?", (name,)).fetchone()
        return int(row["id"]) if row else None

    def get_or_create_source(self, name: str, base_url: str = "") -> int:
        self.conn.execute(
            "INSERT OR IGNORE INTO job_sources(name, base_url, created_at) VALUES (?, ?, ?)",
            (name, base_url, now_utc_iso()),
        )
        self.conn.commit()
        source_id = self.find_source_id(name)
        if source_id is None:
            raise InsertError(f"could not resolve job source: {name}")
        return source_id

    # --- run log ---
    def create_run(self, run_id: str, source: str) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO runs(run_id, source, started_at, ok) VALUES (?, ?, ?, 0)",
            (run_id, source, now_utc_iso()),
        )
        self.conn.commit()

    def finish_run(self, run_id: str, source: str, *, ok: bool, stats: Dict[str, Any]) -> None:
        self.conn.execute(
            """UPDATE runs SET finished_at=?, ok=?, duration_sec=?, pages_processed=?, total_found=?,
                processed=?, inserted=?, skipped=?, errors=?, companies_created=?, companies_updated=?,
                contacts_created=?, contacts_updated=?, ai_calls=?, resume_from_page=?, fatal_error=?,
                cancelled=?
               WHERE run_id=? AND source=?""",
            (
                now_utc_iso(),
                1 if ok else 0,
                float(stats.get("duration_sec", 0.0)),
                int(stats.get("pages_processed", 0)),
                int(stats.get("total_found", 0)),
                int(stats.get("processed", 0)),
                int(stats.get("inserted", 0)),
                int(stats.get("skipped", 0)),
                int(stats.get("errors", 0)),
                int(stats.get("companies_created", 0)),
                int(stats.get("companies_updated", 0)),
                int(stats.get("contacts_created", 0)),
                int(stats.get("contacts_updated", 0)),
                int(stats.get("ai_calls", 0)),
                stats.get("resume_from_page"),
                stats.get("fatal_error"),
                1 if stats.get("cancelled") else 0,
                run_id,
                source,
            ),
        )
        self.conn.commit()

    def record_error(
        self,
        run_id: str,
        *,
        module: str,
        source: str,
        error_type: str,
        message: str,
        external_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        self.conn.execute(
            "INSERT INTO run_errors(run_id, module, source, external_id, title, error_type, message, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (run_id, module, source, external_id, title, error_type, message[:2000], now_utc_iso()),
        )
        self.conn.commit()

    # --- vacancies ---
    def vacancy_exists(self, external_id: str, source_id: int) -> bool:
        cur = self.conn.execute(
            "SELECT 1 FROM vacancies WHERE external_id=? AND source_id=? LIMIT 1",
            (external_id, source_id),
        )
        return cur.fetchone() is not None

    def content_hash_exists(self, content_hash: str) -> bool:
        cur = self.conn.execute(
            "SELECT 1 FROM vacancies WHERE content_hash=? LIMIT 1", (content_hash,)
        )
        return cur.fetchone() is not None

    def insert_vacancy(self, row: VacancyRow) -> int:
        values = asdict(row)
        values["requirements"] = json.dumps(row.requirements or [], ensure_ascii=False)
        values["scraped_at"] = now_utc_iso()
        cols = list(values.keys())
        sql = f"INSERT INTO vacancies({','.join(cols)}) VALUES ({','.join('?' * len(cols))})"
        try:
            cur = self.conn.execute(sql, [values[c] for c in cols])
            self.conn.commit()
        except sqlite3.Error as ex:
            self.conn.rollback()
            raise InsertError(f"insert vacancy {row.external_id} failed: {ex}") from ex
        return int(cur.lastrowid)

    def count_vacancies(self, source_id: Optional[int] = None) -> int:
        if source_id is None:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM vacancies").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM vacancies WHERE source_id=?", (source_id,)
            ).fetchone()
        return int(row["n"])

    def fetch_vacancy(self, external_id: str, source_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM vacancies WHERE external_id=? AND source_id=?",
            (external_id, source_id),
        ).fetchone()
        if not row:
            return None
        out = dict(row)
        out["requirements"] = json.loads(out.get("requirements") or "[]")
        return out

    # --- companies ---
    def find_company(self, normalized_name: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM companies WHERE normalized_name=?", (normalized_name,)
        ).fetchone()
        return dict(row) if row else None

    def insert_company(self, name: str, normalized_name: str, values: Dict[str, Any]) -> int:
        """Raises sqlite3.IntegrityError when the normalized name already exists."""
        data = {k: values.get(k) for k in COMPANY_FIELDS}
        data.update(
            name=name,
            normalized_name=normalized_name,
            status=values.get("status", "Prospect"),
            enrichment_status=values.get("enrichment_status", "pending"),
            qualification_status=values.get("qualification_status", "pending"),
            source=values.get("source"),
            created_at=now_utc_iso(),
        )
        cols = list(data.keys())
        try:
            cur = self.conn.execute(
                f"INSERT INTO companies({','.join(cols)}) VALUES ({','.join('?' * len(cols))})",
                [data[c] for c in cols],
            )
            self.conn.commit()
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise
        return int(cur.lastrowid)

    def patch_company(self, company_id: int, updates: Dict[str, Any]) -> None:
        cols = [k for k in updates if k in COMPANY_FIELDS]
        if not cols:
            return
        # Guard in SQL as well: only columns that are still empty get written.
        for col in cols:
            self.conn.execute(
                f"UPDATE companies SET {col}=?, updated_at=? WHERE id=? AND ({col} IS NULL OR {col}='')",
                (updates[col], now_utc_iso(), company_id),
            )
        self.conn.commit()

    def count_companies(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) AS n FROM companies").fetchone()["n"])

    # --- contacts ---
    def find_contact_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM contacts WHERE email=? ORDER BY id LIMIT 1", (email.lower(),)
        ).fetchone()
        return dict(row) if row else None

    def insert_contact(self, company_id: Optional[int], values: Dict[str, Any]) -> int:
        data = {k: values.get(k) for k in CONTACT_FIELDS}
        if data.get("email"):
            data["email"] = str(data["email"]).lower()
        data.update(
            company_id=company_id,
            source=values.get("source"),
            qualification_status=values.get("qualification_status", "pending"),
            created_at=now_utc_iso(),
        )
        cols = list(data.keys())
        cur = self.conn.execute(
            f"INSERT INTO contacts({','.join(cols)}) VALUES ({','.join('?' * len(cols))})",
            [data[c] for c in cols],
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def fetch_contacts(self, company_id: Optional[int] = None) -> List[Dict[str, Any]]:
        if company_id is None:
            rows = self.conn.execute("SELECT * FROM contacts ORDER BY id").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM contacts WHERE company_id=? ORDER BY id", (company_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    # --- resume cursor ---
    def get_cursor(self, source_id: int) -> Optional[int]:
        state = self.get_cursor_state(source_id)
        return state.next_page if state else None

    def get_cursor_state(self, source_id: int) -> Optional[CursorState]:
        row = self.conn.execute(
            "SELECT next_page, total_pages, failures FROM scrape_cursors WHERE source_id=?",
            (source_id,),
        ).fetchone()
        if not row:
            return None
        return CursorState(
            next_page=int(row["next_page"]),
            total_pages=int(row["total_pages"]) if row["total_pages"] is not None else None,
            failures=int(row["failures"] or 0),
        )

    def set_cursor(
        self,
        source_id: int,
        next_page: int,
        total_pages: Optional[int] = None,
        *,
        failures: int = 0,
    ) -> None:
        self.conn.execute(
            """INSERT INTO scrape_cursors(source_id, next_page, total_pages, failures, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(source_id) DO UPDATE SET next_page=excluded.next_page,
                 total_pages=excluded.total_pages, failures=excluded.failures,
                 updated_at=excluded.updated_at""",
            (source_id, int(next_page), total_pages, int(failures), now_utc_iso()),
        )
        self.conn.commit()

    def clear_cursor(self, source_id: int) -> None:
        self.conn.execute("DELETE FROM scrape_cursors WHERE source_id=?", (source_id,))
        self.conn.commit()
