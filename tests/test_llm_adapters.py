from __future__ import annotations

import dataclasses

import pytest

from conftest import ScriptedAdapter
from trendscope.config.load_config import load_app_config
from trendscope.llm.base import (
    EntityAnswer,
    GenerationError,
    ModelParams,
    StructuredOutputError,
    entity_json_schema,
    parse_entity_answer,
)
from trendscope.llm.dry_run import DryRunAdapter
from trendscope.llm.registry import AdapterRegistry
from trendscope.utils.entity_name import normalize_entity


PARAMS = ModelParams(model="vendor/model-0", system="Answer with one entity.")


def test_parse_entity_answer_accepts_dict_json_and_model() -> None:
    assert parse_entity_answer({"entity": "Python"}) == "Python"
    assert parse_entity_answer('{"entity": "Rust"}') == "Rust"
    assert parse_entity_answer(EntityAnswer(entity="Go")) == "Go"


@pytest.mark.parametrize("payload", [{}, {"entity": ""}, '{"entity": ', {"entity": "x" * 65}])
def test_parse_entity_answer_rejects_bad_payloads(payload) -> None:
    with pytest.raises(StructuredOutputError):
        parse_entity_answer(payload)


def test_entity_schema_is_closed() -> None:
    schema = entity_json_schema()
    assert schema["additionalProperties"] is False
    assert schema["required"] == ["entity"]


def test_text_stage_without_object_support() -> None:
    adapter = ScriptedAdapter("Python", structured_fails=False)
    resp = adapter.respond("q", PARAMS)
    assert resp.generation_type == "text"
    assert resp.sources is None


def test_structured_stage_preferred() -> None:
    adapter = ScriptedAdapter("Python", structured_fails=False)
    params = dataclasses.replace(PARAMS, supports_object_output=True)
    resp = adapter.respond_with_web_search("q", params)
    assert resp.generation_type == "object"
    assert resp.sources == ["https://example.com/source"]


def test_structured_failure_falls_back_to_text() -> None:
    adapter = ScriptedAdapter("Python")
    params = dataclasses.replace(PARAMS, supports_object_output=True)
    resp = adapter.respond("q", params)
    assert resp.generation_type == "text"
    assert resp.text == "Python"


def test_other_errors_surface_as_generation_error() -> None:
    adapter = ScriptedAdapter(TimeoutError("read timed out"))
    with pytest.raises(GenerationError) as ei:
        adapter.respond("q", PARAMS)
    assert "TimeoutError" in str(ei.value)


def test_blank_answer_is_a_generation_error() -> None:
    with pytest.raises(GenerationError):
        ScriptedAdapter("   ").respond("q", PARAMS)


def test_dry_run_adapter_is_deterministic() -> None:
    a = DryRunAdapter(provider="openai")
    first = a.respond("Best show?", PARAMS)
    second = a.respond("Best show?", PARAMS)
    assert first == second
    assert normalize_entity(first.text) in {"Dry Run Alpha", "Dry Run Beta", "Dry Run Gamma"}

    web = a.respond_with_web_search("Best show?", PARAMS)
    assert web.sources and web.sources[0].startswith("https://dry-run.invalid/search/")


def test_registry_routes_unknown_providers_to_gateway() -> None:
    built: list[str] = []

    def _factory(pc):
        built.append(pc.api_key_env)
        return ScriptedAdapter("x")

    registry = AdapterRegistry(load_app_config(), factories={"openrouter": _factory})

    assert registry.resolve_name("Mystery-AI") == "openrouter"
    first = registry.get("Mystery-AI")
    assert registry.get("OPENROUTER") is first
    assert built == ["OPENROUTER_API_KEY"]


def test_registry_dry_run_uses_synthetic_adapter() -> None:
    cfg = load_app_config()
    cfg = dataclasses.replace(cfg, executor=dataclasses.replace(cfg.executor, dry_run=True))
    adapter = AdapterRegistry(cfg).get("anthropic")
    assert isinstance(adapter, DryRunAdapter)
    assert adapter.provider == "anthropic"
