# tests/conftest.py
import json
from typing import Any, Dict, List, Optional

import pytest

from vacancyfeed.core.budget import Budget
from vacancyfeed.core.db import Database
from vacancyfeed.core.http import FetchError, SessionContext
from vacancyfeed.core.llm import AiFields, AiPosting

BASE_URL = "https://jobs.example.nl"
DOCS_URL = "https://docs.example.nl"


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def no_api_keys(monkeypatch):
    """Keep real providers offline unless a test opts in."""
    for env in ("MISTRAL_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"):
        monkeypatch.delenv(env, raising=False)
    yield


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "state" / "vacancies.db"))
    yield database
    database.close()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeHttp:
    """Serves canned bodies by URL. A tuple value is (body, cookies set by the server)."""

    def __init__(self, pages: Optional[Dict[str, Any]] = None) -> None:
        self.pages: Dict[str, Any] = dict(pages or {})
        self.calls: List[tuple] = []

    def _get(self, url: str, session: SessionContext):
        self.calls.append((url, session.cookies_for(url)))
        body = self.pages.get(url)
        if body is None:
            raise FetchError(url, status=404, attempts=3)
        if isinstance(body, Exception):
            raise body
        set_cookies: Dict[str, str] = {}
        if isinstance(body, tuple):
            body, set_cookies = body
        return body, session.merged(url, set_cookies)

    def fetch(self, url: str, session: SessionContext):
        return self._get(url, session)

    def fetch_bytes(self, url: str, session: SessionContext):
        return self._get(url, session)

    def urls(self) -> List[str]:
        return [u for u, _ in self.calls]


class FakeAi:
    """Stands in for AiExtractor; returns canned results and counts calls."""

    def __init__(
        self,
        fields: Optional[AiFields] = None,
        posting: Optional[AiPosting] = None,
        min_input_chars: int = 50,
    ) -> None:
        self.budget = Budget(max_calls=1000)
        self.min_input_chars = min_input_chars
        self.fields = fields or AiFields(status="ok")
        self.posting = posting or AiPosting.empty("missing_credentials")
        self.texts: List[str] = []

    def extract(self, text: str) -> AiFields:
        if len((text or "").strip()) < self.min_input_chars:
            return AiFields.empty("too_short")
        self.texts.append(text)
        self.budget.consume_call(1)
        return self.fields

    def extract_posting(self, text: str) -> AiPosting:
        self.texts.append(text)
        self.budget.consume_call(1)
        return self.posting


@pytest.fixture
def fake_ai():
    return FakeAi()


# ---------------------------------------------------------------------------
# Page builders
# ---------------------------------------------------------------------------
def posting(
    external_id: str,
    title: str = "Magazijnmedewerker",
    company: str = "Acme Logistics",
    city: str = "Utrecht",
    *,
    slug: Optional[str] = None,
    description: str = "",
    employment: Optional[str] = None,
) -> Dict[str, Any]:
    src: Dict[str, Any] = {
        "title": title,
        "description": description,
        "companyBranch": {"name": company},
        "address": {"city": city, "location": [5.1214, 52.0907]},
    }
    if slug:
        src["slug"] = slug
    if employment:
        src["employmentType"] = {"name": employment}
    return {"_id": external_id, "_source": src}


def next_data_page(
    postings: List[Dict[str, Any]],
    *,
    page: int = 1,
    total_pages: int = 1,
    total_results: Optional[int] = None,
) -> str:
    data = {
        "props": {
            "pageProps": {
                "jobPostings": postings,
                "totalResults": len(postings) if total_results is None else total_results,
            }
        }
    }
    return (
        "<html><body>"
        f"<nav><span>Pagina {page} van {total_pages}</span></nav>"
        f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(data)}</script>'
        "</body></html>"
    )


def jobposting_page(jsonld: Any) -> str:
    return (
        "<html><head>"
        f'<script type="application/ld+json">{json.dumps(jsonld)}</script>'
        "</head><body><h1>Vacature</h1></body></html>"
    )


def nextdata_source(**overrides: Any) -> Dict[str, Any]:
    src = {
        "name": "Test Banen",
        "adapter": "nextdata",
        "base_url": BASE_URL,
        "delay_between_pages_ms": 0,
        "delay_between_details_ms": 0,
        "delay_between_ai_calls_ms": 0,
    }
    src.update(overrides)
    return src


def pdf_source(**overrides: Any) -> Dict[str, Any]:
    src = {
        "name": "Test Documenten",
        "adapter": "pdf_links",
        "base_url": DOCS_URL,
        "list_path": "vacatures.php",
        "delay_between_pages_ms": 0,
        "delay_between_details_ms": 0,
        "delay_between_ai_calls_ms": 0,
    }
    src.update(overrides)
    return src
