from __future__ import annotations

import logging
from typing import Any

from trendscope.llm.base import (
    EntityAnswer,
    LLMConfigError,
    ModelParams,
    ProviderAdapter,
    StructuredOutputError,
    WebSearchConfig,
    entity_json_schema,
    parse_entity_answer,
)
from trendscope.utils.json_extract import JSONExtractionError, extract_first_json_object


logger = logging.getLogger(__name__)


def _make_openai_client(*, api_key: str | None, base_url: str | None, timeout_s: float | None) -> Any:
    if not api_key:
        raise LLMConfigError("Missing API key for OpenAI-compatible provider.")
    try:
        from openai import OpenAI  # type: ignore
    except Exception as e:
        raise LLMConfigError("Missing dependency: openai. Install it in the runtime environment.") from e
    kwargs: dict[str, Any] = {"api_key": api_key, "timeout": timeout_s}
    if base_url:
        kwargs["base_url"] = base_url
    return OpenAI(**kwargs)


def _bad_request_error() -> type[Exception]:
    from openai import BadRequestError  # type: ignore

    return BadRequestError


class OpenAIResponsesAdapter(ProviderAdapter):
    """OpenAI models via the Responses API (native `web_search` tool)."""

    provider = "openai"

    def __init__(
        self, *, api_key: str | None, base_url: str | None = None, timeout_s: float | None = 60.0
    ) -> None:
        self._client = _make_openai_client(api_key=api_key, base_url=base_url, timeout_s=timeout_s)
        self._bad_request = _bad_request_error()

    def _payload(self, question: str, params: ModelParams, search: WebSearchConfig | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": params.model,
            "instructions": params.system,
            "input": question,
        }
        if params.temperature is not None:
            payload["temperature"] = float(params.temperature)
        if search is not None:
            payload["tools"] = [{"type": "web_search", "search_context_size": search.context_size}]
        return payload

    @staticmethod
    def _sources(resp: Any) -> list[str]:
        urls: list[str] = []
        for item in getattr(resp, "output", None) or []:
            if getattr(item, "type", None) != "message":
                continue
            for part in getattr(item, "content", None) or []:
                for ann in getattr(part, "annotations", None) or []:
                    if getattr(ann, "type", None) == "url_citation":
                        urls.append(getattr(ann, "url", None))
        return urls

    def _generate_structured(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        try:
            resp = self._client.responses.parse(
                text_format=EntityAnswer, **self._payload(question, params, search)
            )
        except self._bad_request as e:
            raise StructuredOutputError(f"Structured output rejected: {e}") from e
        parsed = getattr(resp, "output_parsed", None)
        if parsed is None:
            raise StructuredOutputError("Empty structured output.")
        return parse_entity_answer(parsed), self._sources(resp)

    def _generate_text(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        resp = self._client.responses.create(**self._payload(question, params, search))
        return str(getattr(resp, "output_text", "") or ""), self._sources(resp)


class OpenAIChatAdapter(ProviderAdapter):
    """OpenAI-compatible chat completions gateway (OpenRouter by default, also xAI).

    Web search is provider specific and travels in `extra_body`: OpenRouter's
    `web` plugin, or xAI live search parameters.
    """

    provider = "openrouter"

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str | None,
        provider: str = "openrouter",
        timeout_s: float | None = 60.0,
    ) -> None:
        self.provider = provider
        self._client = _make_openai_client(api_key=api_key, base_url=base_url, timeout_s=timeout_s)
        self._bad_request = _bad_request_error()

    def _web_extra_body(self, search: WebSearchConfig) -> dict[str, Any]:
        if self.provider == "xai":
            return {"search_parameters": {"mode": search.mode, "return_citations": True}}
        return {"plugins": [{"id": "web"}]}

    def _payload(self, question: str, params: ModelParams, search: WebSearchConfig | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": params.model,
            "messages": [
                {"role": "system", "content": params.system},
                {"role": "user", "content": question},
            ],
            "max_tokens": int(params.max_output_tokens),
        }
        if params.temperature is not None:
            payload["temperature"] = float(params.temperature)
        if search is not None:
            payload["extra_body"] = self._web_extra_body(search)
        return payload

    @staticmethod
    def _sources(raw: dict[str, Any]) -> list[str]:
        urls: list[str] = []
        # xAI returns a flat list of citation URLs at the top level.
        citations = raw.get("citations")
        if isinstance(citations, list):
            urls.extend(c for c in citations if isinstance(c, str))
        choices = raw.get("choices") or []
        msg = (choices[0] or {}).get("message") if choices and isinstance(choices[0], dict) else None
        if isinstance(msg, dict):
            for ann in msg.get("annotations") or []:
                if isinstance(ann, dict) and ann.get("type") == "url_citation":
                    cite = ann.get("url_citation") or {}
                    urls.append(cite.get("url"))
        return urls

    def _complete(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        resp = self._client.chat.completions.create(**payload)
        raw = resp.model_dump()
        content = ""
        if resp.choices:
            content = (resp.choices[0].message.content or "").strip()
        return content, raw

    def _generate_structured(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        payload = self._payload(question, params, search)
        payload["response_format"] = {
            "type": "json_schema",
            "json_schema": {"name": "entity_answer", "strict": True, "schema": entity_json_schema()},
        }
        try:
            content, raw = self._complete(payload)
        except self._bad_request as e:
            raise StructuredOutputError(f"Structured output rejected: {e}") from e
        try:
            obj = extract_first_json_object(content)
        except JSONExtractionError as e:
            raise StructuredOutputError(str(e)) from e
        return parse_entity_answer(obj), self._sources(raw)

    def _generate_text(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        content, raw = self._complete(self._payload(question, params, search))
        return content, self._sources(raw)
