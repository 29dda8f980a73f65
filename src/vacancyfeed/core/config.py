from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List

import yaml

KNOWN_ADAPTERS = ("nextdata", "pdf_links")

_DEFAULT_PATTERNS = {
    "nextdata": r"Pagina\s+(\d+)\s+van\s+(\d+)",
    "pdf_links": r"pagina\s+(\d+)\s+van\s+(\d+)",
}

_INT_OPTIONS = (
    ("start_page", 1),
    ("max_pages_per_run", 1),
    ("page_size", 0),
    ("delay_between_pages_ms", 0),
    ("delay_between_ai_calls_ms", 0),
    ("delay_between_details_ms", 0),
    ("min_document_chars", 0),
    ("consecutive_skip_limit", 0),
    ("max_page_failures", 1),
)


class ConfigError(RuntimeError):
    pass


def _require(d: Dict[str, Any], key: str, path: str) -> Any:
    if key not in d or d[key] in (None, ""):
        raise ConfigError(f"Missing required config: {path}.{key}")
    return d[key]


def load_config(path: str | Path = "config.yaml") -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(
            f"Config file not found: {p.resolve()}\n\nTip: copy config.example.yaml -> config.yaml"
        )
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    validate_config(data)
    return data


def validate_config(cfg: Dict[str, Any]) -> None:
    # Source entries are checked lazily by validate_source so that one broken
    # source does not prevent the others from running.
    _require(cfg, "sources", "")
    if not isinstance(cfg["sources"], list):
        raise ConfigError("Config sources must be a list")

    cfg.setdefault("llm", {})
    cfg["llm"].setdefault("provider", "mistral")
    cfg["llm"].setdefault("fallback_providers", [])
    cfg["llm"].setdefault("model", "mistral-small-latest")
    cfg["llm"].setdefault("temperature", 0)
    cfg["llm"].setdefault("timeout_sec", 30)
    cfg["llm"].setdefault("min_input_chars", 50)
    cfg["llm"].setdefault("max_input_chars", 4000)
    cfg["llm"].setdefault("max_calls_per_run", 500)
    cfg["llm"].setdefault("max_requirements", 5)
    cfg["llm"].setdefault("provider_options", {})

    cfg.setdefault("retry", {})
    cfg["retry"].setdefault("max_attempts", 3)
    cfg["retry"].setdefault("backoff_base_sec", 0.5)
    cfg["retry"].setdefault("backoff_factor", 2.0)
    cfg["retry"].setdefault("max_backoff_sec", 10.0)

    cfg.setdefault("runtime", {})
    cfg["runtime"].setdefault("timezone", "Europe/Amsterdam")
    cfg["runtime"].setdefault("user_agent", "vacancyfeed/0.1")
    cfg["runtime"].setdefault("http_timeout_sec", 20)
    cfg["runtime"].setdefault("state_db_path", "state/vacancies.db")
    cfg["runtime"].setdefault("log_dir", "logs")
    cfg["runtime"].setdefault("log_level", "INFO")
    cfg["runtime"].setdefault("keep_error_days", 30)
    cfg["runtime"].setdefault("run_timeout_sec", 0)


def _int_option(src: Dict[str, Any], key: str, name: str, minimum: int) -> None:
    raw = src[key]
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"sources[{name}].{key} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"sources[{name}].{key} must be >= {minimum}")
    src[key] = value


def validate_source(src: Dict[str, Any]) -> Dict[str, Any]:
    """Fill defaults for one source entry; raises ConfigError when it cannot run."""
    if not isinstance(src, dict):
        raise ConfigError("Source entry must be a mapping")
    name = _require(src, "name", "sources[]")
    adapter = _require(src, "adapter", f"sources[{name}]")
    _require(src, "base_url", f"sources[{name}]")
    if adapter not in KNOWN_ADAPTERS:
        raise ConfigError(f"Unknown adapter for source {name}: {adapter}")

    src.setdefault("list_path", "/vacatures" if adapter == "nextdata" else "/vacatures.php")
    src.setdefault("page_param", "page" if adapter == "nextdata" else "prevnext")
    src.setdefault("start_page", 1)
    src.setdefault("max_pages_per_run", 50)
    src.setdefault("page_size", 0)
    src.setdefault("delay_between_pages_ms", 500)
    src.setdefault("delay_between_ai_calls_ms", 100 if adapter == "nextdata" else 1000)
    src.setdefault("delay_between_details_ms", 300)
    src.setdefault("fetch_detail_pages", adapter == "nextdata")
    src.setdefault("use_session_cookies", adapter == "pdf_links")
    src.setdefault("pagination_pattern", _DEFAULT_PATTERNS[adapter])
    src.setdefault("link_selector", 'a[href*="pdf/"]')
    src.setdefault("default_country", "Netherlands")
    src.setdefault("min_document_chars", 50)
    src.setdefault("skip_ai", False)
    src.setdefault("consecutive_skip_limit", 0)
    src.setdefault("max_page_failures", 3)

    for key, minimum in _INT_OPTIONS:
        _int_option(src, key, name, minimum)

    try:
        pattern = re.compile(str(src["pagination_pattern"]))
    except re.error as ex:
        raise ConfigError(f"sources[{name}].pagination_pattern is not a valid regex: {ex}") from None
    if pattern.groups < 2:
        raise ConfigError(f"sources[{name}].pagination_pattern needs two groups (page, total)")

    if src["skip_ai"] and adapter == "pdf_links":
        raise ConfigError(f"sources[{name}].skip_ai is not possible for pdf_links; documents need extraction")
    return src


def source_names(cfg: Dict[str, Any]) -> List[str]:
    return [str(s.get("name")) for s in cfg.get("sources", []) if isinstance(s, dict)]
