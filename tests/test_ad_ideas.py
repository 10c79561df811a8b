import json
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError

from ads import ad_ideas
from ads.ad_ideas import AdIdeasRequest, NoDescriptionsError, generate_ad_ideas, normalize_variants, suggest_copy
from telemetry import metrics


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        usage = SimpleNamespace(prompt_tokens=120, completion_tokens=80)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


class FakeOpenAI:
    def __init__(self, **kwargs):
        self.completions = FakeCompletions(**kwargs)
        self.chat = SimpleNamespace(completions=self.completions)


def _request(ids, **kwargs):
    return AdIdeasRequest(mode="single", propertyIds=ids, **kwargs)


def test_normalize_variants_pads_with_last_and_truncates():
    variants = normalize_variants(
        [{"title": "T" * 60, "description": "Uno"}, {"title": "Dos", "description": "D" * 80}, {"title": "", "description": "x"}]
    )
    assert len(variants) == 5
    assert len(variants[0]["title"]) == 40
    assert len(variants[1]["description"]) == 60
    assert variants[4] == variants[1]


def test_request_accepts_camel_case_ids():
    request = AdIdeasRequest.model_validate({"mode": "carousel", "propertyIds": ["EB-1"], "locale": "en"})
    assert request.property_ids == ["EB-1"]
    assert request.model == "gpt-4o-mini"


def test_openai_ideas_are_ordered_like_request():
    content = json.dumps(
        {
            "items": [
                {"id": "EB-2", "variants": [{"title": "B", "description": "b"}]},
                {"id": "EB-1", "variants": [{"title": "A", "description": "a"}] * 6},
                {"id": "EB-99", "variants": [{"title": "Z", "description": "z"}]},
            ]
        }
    )
    client = FakeOpenAI(content=content)
    result = generate_ad_ideas(
        _request(["EB-1", "EB-2", "EB-3"]),
        {"EB-1": "<p>Casa con jardín.</p>", "EB-2": "Departamento céntrico.", "EB-3": ""},
        client=client,
    )
    assert result["engine"] == "openai"
    assert [item["id"] for item in result["items"]] == ["EB-1", "EB-2"]
    assert all(len(item["variants"]) == 5 for item in result["items"])
    assert result["missing"] == ["EB-3"]
    assert result["usage"] == {"prompt_tokens": 120, "completion_tokens": 80}
    sent = json.loads(client.completions.calls[0]["messages"][1]["content"])
    assert sent["items"][0] == {"id": "EB-1", "description": "Casa con jardín."}
    assert client.completions.calls[0]["response_format"] == {"type": "json_object"}


def test_unusable_output_falls_back_to_native():
    client = FakeOpenAI(content="not json")
    result = generate_ad_ideas(_request(["EB-1"]), {"EB-1": "Casa con alberca"}, client=client)
    assert result["engine"] == "native_fallback"
    assert len(result["items"][0]["variants"]) == 5


def test_openai_error_falls_back_to_native():
    error = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    client = FakeOpenAI(error=error)
    result = generate_ad_ideas(_request(["EB-1"], locale="en"), {"EB-1": "House with garden"}, client=client)
    assert result["engine"] == "native_fallback"
    assert result["items"][0]["variants"][0]["description"].startswith("Book a visit")


def test_missing_key_uses_native_copy(monkeypatch):
    monkeypatch.setattr(ad_ideas, "get_openai_client", lambda: None)
    result = generate_ad_ideas(
        _request(["EB-1"]),
        {"EB-1": "Casa amplia"},
        properties={"EB-1": {"property_type": "Casa", "location_text": "Centro, Querétaro"}},
    )
    assert result["engine"] == "native"
    variants = result["items"][0]["variants"]
    assert len(variants) == 5
    assert all(len(v["title"]) <= 40 and len(v["description"]) <= 60 for v in variants)
    assert result["usage"] is None


def test_no_descriptions_raises_with_missing_ids():
    with pytest.raises(NoDescriptionsError) as excinfo:
        generate_ad_ideas(_request(["EB-1", "EB-2"]), {"EB-1": None}, client=FakeOpenAI())
    assert excinfo.value.missing == ["EB-1", "EB-2"]


def test_suggest_copy_native_engine_skips_openai():
    client = FakeOpenAI(content="{}")
    result = suggest_copy("single", [{"public_id": "EB-1", "title": "Casa"}], engine="native", client=client)
    assert result["engine"] == "native"
    assert result["type"] == "single"
    assert client.completions.calls == []


def test_suggest_copy_carousel_from_openai():
    content = json.dumps({"message": "Explora", "copies": [{"id": "EB-1", "headline": "H", "description": "D"}]})
    result = suggest_copy("carousel", [{"public_id": "EB-1"}], client=FakeOpenAI(content=content))
    assert result["engine"] == "openai"
    assert result["copies"] == [{"id": "EB-1", "headline": "H", "description": "D"}]


def test_suggest_copy_single_falls_back_when_headline_missing():
    result = suggest_copy("single", [{"public_id": "EB-1", "title": "Casa"}], client=FakeOpenAI(content="{}"))
    assert result["engine"] == "native_fallback"
    assert "Querétaro" in result["copy"]["headline"]


def test_suggest_copy_records_token_metric():
    content = json.dumps({"message": "Explora", "copies": [{"id": "EB-1", "headline": "H", "description": "D"}]})
    suggest_copy("carousel", [{"public_id": "EB-1"}], client=FakeOpenAI(content=content))
    row = metrics.fetch_metrics()[0]
    assert row["operation"] == "suggest_copy"
    assert row["status"] == "openai"
    assert row["tokens_in"] == "120"
    assert row["cost_usd"] != ""


def test_suggest_copy_records_fallback_metric():
    error = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    suggest_copy("single", [{"public_id": "EB-1"}], client=FakeOpenAI(error=error))
    row = metrics.fetch_metrics()[0]
    assert row["operation"] == "suggest_copy"
    assert row["status"] == "native_fallback"
