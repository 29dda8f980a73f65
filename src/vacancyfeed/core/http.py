from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter

from .logging import log_event


def origin_of(url: str) -> str:
    parts = urlsplit(url or "")
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


class FetchError(RuntimeError):
    def __init__(
        self, url: str, *, status: Optional[int], attempts: int, message: str = ""
    ) -> None:
        self.url = url
        self.status = status
        self.attempts = attempts
        detail = message or (f"HTTP {status}" if status else "request failed")
        super().__init__(f"fetch failed after {attempts} attempt(s): {url}: {detail}")


@dataclass
class SessionContext:
    """Cookie state for one run, kept per origin. Never shared between runs."""

    jar: Dict[str, Dict[str, str]] = field(default_factory=dict)
    requests: int = 0

    def cookies_for(self, url: str) -> Dict[str, str]:
        return dict(self.jar.get(origin_of(url), {}))

    def merged(self, url: str, new_cookies: Dict[str, str]) -> "SessionContext":
        jar = {k: dict(v) for k, v in self.jar.items()}
        fresh = {k: v for k, v in (new_cookies or {}).items() if k}
        if fresh:
            jar.setdefault(origin_of(url), {}).update(fresh)
        return replace(self, jar=jar, requests=self.requests + 1)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_sec: float = 0.5
    backoff_factor: float = 2.0
    max_backoff_sec: float = 10.0
    sleep: Callable[[float], None] = time.sleep

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (0-based)."""
        d = self.backoff_base_sec * (self.backoff_factor ** max(0, attempt))
        return max(0.0, min(self.max_backoff_sec, d))

    @classmethod
    def none(cls, max_attempts: int = 3) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            backoff_base_sec=0.0,
            max_backoff_sec=0.0,
            sleep=lambda _s: None,
        )

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(cfg.get("max_attempts", 3))),
            backoff_base_sec=float(cfg.get("backoff_base_sec", 0.5)),
            backoff_factor=float(cfg.get("backoff_factor", 2.0)),
            max_backoff_sec=float(cfg.get("max_backoff_sec", 10.0)),
        )


@dataclass
class HttpClient:
    user_agent: str
    timeout_sec: int = 20
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    _browser_headers = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "nl-NL,nl;q=0.9,en;q=0.8",
        "Cache-Control": "no-cache",
    }

    def __post_init__(self) -> None:
        # The session only pools connections; retries and cookies are explicit.
        self.session = requests.Session()
        adapter = HTTPAdapter(pool_connections=4, pool_maxsize=4, max_retries=0)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _headers(self, headers: Optional[dict]) -> Dict[str, str]:
        h = {"User-Agent": self.user_agent, **self._browser_headers}
        if headers:
            h.update(headers)
        return h

    def _request(
        self, url: str, session: SessionContext, *, headers: Optional[dict] = None
    ) -> Tuple[requests.Response, SessionContext]:
        attempts = max(1, int(self.policy.max_attempts))
        last_status: Optional[int] = None
        last_error = ""
        for attempt in range(attempts):
            try:
                resp = self.session.get(
                    url,
                    headers=self._headers(headers),
                    cookies=session.cookies_for(url),
                    timeout=self.timeout_sec,
                )
            except requests.RequestException as ex:
                last_status = None
                last_error = repr(ex)
            else:
                received = requests.utils.dict_from_cookiejar(self.session.cookies)
                received.update(requests.utils.dict_from_cookiejar(resp.cookies))
                session = session.merged(url, received)
                if 200 <= resp.status_code < 300:
                    return resp, session
                last_status = resp.status_code
                last_error = f"HTTP {resp.status_code}"
            finally:
                self.session.cookies.clear()

            if attempt + 1 < attempts:
                wait = self.policy.delay(attempt)
                log_event(
                    "http_retry",
                    url=url,
                    attempt=attempt + 1,
                    status=last_status,
                    error=last_error[:200],
                    wait_sec=round(wait, 3),
                )
                self.policy.sleep(wait)
        raise FetchError(url, status=last_status, attempts=attempts, message=last_error[:300])

    def fetch(
        self, url: str, session: SessionContext, *, headers: Optional[dict] = None
    ) -> Tuple[str, SessionContext]:
        resp, session = self._request(url, session, headers=headers)
        resp.encoding = resp.encoding or "utf-8"
        return resp.text, session

    def fetch_bytes(
        self, url: str, session: SessionContext, *, headers: Optional[dict] = None
    ) -> Tuple[bytes, SessionContext]:
        resp, session = self._request(url, session, headers=headers)
        return resp.content, session
