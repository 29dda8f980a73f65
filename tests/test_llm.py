import json

import pytest

from vacancyfeed.core import llm
from vacancyfeed.core.budget import Budget
from vacancyfeed.core.llm import AiExtractor, _extract_first_json_object
from vacancyfeed.core.llm_providers.mistral import MistralProvider
from vacancyfeed.core.llm_providers.registry import get_provider, list_providers

TEXT = (
    "Acme Logistics zoekt een Warehouse Associate in Utrecht voor 32 tot 40 uur per week. "
    "Salaris tussen 2.800 en 3.400 euro per maand. Vragen? Bel Jan de Vries, 06-12345678."
)

GOOD = {
    "salary": "€ 2.800 - € 3.400 per maand",
    "working_hours": "32-40",
    "requirements": ["Rijbewijs B", "Flexibel", "Teamspeler"],
    "company_website": None,
    "company_phone": None,
    "company_email": "Info@Acme.NL",
    "contact_name": "Jan de Vries",
    "contact_email": "geen email bekend",
    "contact_phone": "06-12345678",
    "contact_title": "HR Manager",
}


class FakeProvider:
    def __init__(self, name, responses=(), ready=True):
        self.name = name
        self.responses = list(responses)
        self.is_ready = ready
        self.calls = []

    def ready(self, cfg):
        return self.is_ready

    def call_json(self, **kwargs):
        self.calls.append(kwargs)
        out = self.responses.pop(0)
        if isinstance(out, Exception):
            raise out
        return out, {"input": 10, "output": 5, "total": 15}


@pytest.fixture
def providers(monkeypatch):
    registry = {}
    monkeypatch.setattr(llm, "get_provider", lambda name: registry.get(name))
    return registry


def _extractor(budget=None, **overrides):
    cfg = {"provider": "mistral", "min_input_chars": 50, "max_input_chars": 4000}
    cfg.update(overrides)
    return AiExtractor(cfg, budget=budget or Budget(max_calls=10), run_id="test")


def test_short_text_is_not_sent(providers):
    providers["mistral"] = FakeProvider("mistral", [json.dumps(GOOD)])
    ai = _extractor()

    result = ai.extract("Te kort.")

    assert not result.ok
    assert result.reason == "too_short"
    assert providers["mistral"].calls == []
    assert ai.budget.calls_used == 0


def test_missing_credentials_does_not_spend_budget():
    # real registry, no API keys in the environment
    ai = _extractor(fallback_providers=["openai", "gemini"])
    result = ai.extract(TEXT)
    assert result.reason == "missing_credentials"
    assert result.requirements == []
    assert ai.budget.calls_used == 0


def test_successful_extraction_is_cleaned(providers):
    providers["mistral"] = FakeProvider("mistral", [json.dumps(GOOD)])
    ai = _extractor()

    result = ai.extract(TEXT)

    assert result.ok
    assert result.provider == "mistral"
    assert result.salary == "€ 2.800 - € 3.400 per maand"
    assert result.working_hours == "32-40"
    assert result.company_email == "info@acme.nl"
    assert result.contact_email is None
    assert result.contact_name == "Jan de Vries"
    assert ai.budget.calls_used == 1
    assert ai.usage_by_provider["mistral"]["calls"] == 1
    assert ai.usage_by_provider["mistral"]["total_tokens"] == 15

    call = providers["mistral"].calls[0]
    assert call["system_prompt"] == llm.FIELDS_SYSTEM_PROMPT
    assert call["user_prompt"] == TEXT
    assert call["response_schema"] == llm.AI_FIELDS_SCHEMA


def test_fenced_json_is_accepted(providers):
    fenced = "Hier is het resultaat:\n```json\n" + json.dumps(GOOD) + "\n```\nSucces!"
    providers["mistral"] = FakeProvider("mistral", [fenced])

    result = _extractor().extract(TEXT)

    assert result.ok
    assert result.contact_phone == "06-12345678"


def test_extract_first_json_object_handles_prose_and_braces():
    blob = 'Antwoord: {"salary": "a } b", "requirements": ["x"]} en verder'
    assert json.loads(_extract_first_json_object(blob)) == {
        "salary": "a } b",
        "requirements": ["x"],
    }
    assert _extract_first_json_object("geen json") == ""


@pytest.mark.parametrize(
    "content, reason",
    [
        ("dit is geen json", "invalid_json"),
        (json.dumps({"requirements": "Rijbewijs B"}), "schema_error"),
        ("", "empty_content"),
    ],
)
def test_bad_output_falls_back_to_default(providers, content, reason):
    providers["mistral"] = FakeProvider("mistral", [content])
    ai = _extractor()

    result = ai.extract(TEXT)

    assert not result.ok
    assert result.reason == reason
    assert result.salary is None
    assert ai.budget.calls_used == 1


def test_provider_error_falls_through_chain(providers):
    providers["mistral"] = FakeProvider("mistral", [RuntimeError("Mistral HTTP 503")])
    providers["openai"] = FakeProvider("openai", [json.dumps(GOOD)])
    ai = _extractor(fallback_providers=["openai", "mistral"])

    result = ai.extract(TEXT)

    assert result.ok
    assert result.provider == "openai"
    assert ai.budget.calls_used == 1
    assert "mistral" not in ai.usage_by_provider


def test_provider_error_without_fallback(providers):
    providers["mistral"] = FakeProvider("mistral", [TimeoutError("read timeout")])
    result = _extractor().extract(TEXT)
    assert result.reason == "provider_error"


def test_unready_provider_is_skipped(providers):
    providers["mistral"] = FakeProvider("mistral", ready=False)
    providers["gemini"] = FakeProvider("gemini", [json.dumps(GOOD)])
    result = _extractor(fallback_providers=["gemini"]).extract(TEXT)
    assert result.provider == "gemini"
    assert providers["mistral"].calls == []


def test_long_input_is_truncated(providers):
    providers["mistral"] = FakeProvider("mistral", [json.dumps(GOOD)])
    ai = _extractor(max_input_chars=100)

    ai.extract(TEXT * 5)

    sent = providers["mistral"].calls[0]["user_prompt"]
    assert sent.endswith("...")
    assert len(sent) <= 103


def test_requirements_are_capped(providers):
    many = dict(GOOD, requirements=["", "  "] + [f"eis {i}" for i in range(8)])
    providers["mistral"] = FakeProvider("mistral", [json.dumps(many)])

    result = _extractor().extract(TEXT)

    assert result.requirements == ["eis 0", "eis 1", "eis 2", "eis 3", "eis 4"]


def test_budget_exhaustion(providers):
    providers["mistral"] = FakeProvider("mistral", [json.dumps(GOOD), json.dumps(GOOD)])
    ai = _extractor(budget=Budget(max_calls=1))

    assert ai.extract(TEXT).ok
    second = ai.extract(TEXT)

    assert second.reason == "budget_exhausted"
    assert len(providers["mistral"].calls) == 1
    assert ai.budget.remaining == 0


def test_posting_extraction(providers):
    payload = dict(
        GOOD,
        title="Chauffeur C",
        company_name="Transport BV",
        city="Utrecht",
        location="Utrecht e.o.",
        description="x" * 800,
    )
    providers["mistral"] = FakeProvider("mistral", [json.dumps(payload)])

    posting = _extractor().extract_posting(TEXT)

    assert posting.ok
    assert posting.title == "Chauffeur C"
    assert posting.company_name == "Transport BV"
    assert posting.location == "Utrecht e.o."
    assert len(posting.description) == 500
    assert providers["mistral"].calls[0]["system_prompt"] == llm.POSTING_SYSTEM_PROMPT


def test_posting_requires_title_and_company(providers):
    providers["mistral"] = FakeProvider("mistral", [json.dumps(dict(GOOD, title="Chauffeur"))])
    posting = _extractor().extract_posting(TEXT)
    assert not posting.ok
    assert posting.reason == "schema_error"
    assert posting.title is None


def test_registry():
    assert list_providers() == ["gemini", "mistral", "openai"]
    assert isinstance(get_provider("Mistral"), MistralProvider)
    assert get_provider("") is None
    assert get_provider("minimax") is None


class _Resp:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


def test_mistral_request_shape(monkeypatch):
    monkeypatch.setenv("MISTRAL_API_KEY", "sk-test")
    sent = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        sent.update(url=url, headers=headers, json=json, timeout=timeout)
        return _Resp(
            200,
            {
                "choices": [{"message": {"content": ' {"salary": null} '}}],
                "usage": {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150},
            },
        )

    monkeypatch.setattr("vacancyfeed.core.llm_providers.mistral.requests.post", fake_post)
    provider = MistralProvider()

    assert provider.ready({})
    content, usage = provider.call_json(
        model="mistral-small-latest",
        temperature=0,
        timeout_sec=30,
        system_prompt="sys",
        user_prompt="user",
        response_schema=None,
        cfg={},
    )

    assert content == '{"salary": null}'
    assert usage == {"input": 120, "output": 30, "total": 150}
    assert sent["url"] == "https://api.mistral.ai/v1/chat/completions"
    assert sent["headers"]["Authorization"] == "Bearer sk-test"
    assert sent["json"]["response_format"] == {"type": "json_object"}
    assert [m["role"] for m in sent["json"]["messages"]] == ["system", "user"]
    assert sent["timeout"] == 30


def test_mistral_http_error_raises(monkeypatch):
    monkeypatch.setenv("MISTRAL_API_KEY", "sk-test")
    monkeypatch.setattr(
        "vacancyfeed.core.llm_providers.mistral.requests.post",
        lambda *a, **kw: _Resp(429, text="rate limited"),
    )
    with pytest.raises(RuntimeError, match="429"):
        MistralProvider().call_json(
            model="m",
            temperature=0,
            timeout_sec=5,
            system_prompt="s",
            user_prompt="u",
            response_schema=None,
            cfg={},
        )
