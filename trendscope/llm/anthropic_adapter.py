from __future__ import annotations

from typing import Any

from trendscope.llm.base import (
    ENTITY_TOOL_NAME,
    LLMConfigError,
    ModelParams,
    ProviderAdapter,
    StructuredOutputError,
    WebSearchConfig,
    entity_json_schema,
    parse_entity_answer,
)


class AnthropicAdapter(ProviderAdapter):
    """Claude models via the Messages API.

    Structured output is a tool whose input schema is the entity answer. Web
    search is the server-side `web_search` tool; with it enabled the entity tool
    cannot be forced, so a missing tool call counts as a structured failure.
    """

    provider = "anthropic"

    def __init__(self, *, api_key: str | None, timeout_s: float | None = 60.0) -> None:
        if not api_key:
            raise LLMConfigError("Missing ANTHROPIC_API_KEY.")
        try:
            import anthropic  # type: ignore
        except Exception as e:
            raise LLMConfigError("Missing dependency: anthropic. Install it in the runtime environment.") from e
        self._client = anthropic.Anthropic(api_key=api_key, timeout=timeout_s)
        self._bad_request = anthropic.BadRequestError

    def _payload(self, question: str, params: ModelParams, search: WebSearchConfig | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": params.model,
            "max_tokens": int(params.max_output_tokens),
            "system": params.system,
            "messages": [{"role": "user", "content": question}],
        }
        if params.temperature is not None:
            payload["temperature"] = float(params.temperature)
        if search is not None:
            payload["tools"] = [
                {"type": "web_search_20250305", "name": "web_search", "max_uses": int(search.max_uses)}
            ]
        return payload

    @staticmethod
    def _sources(resp: Any) -> list[str]:
        urls: list[str] = []
        for block in getattr(resp, "content", None) or []:
            if getattr(block, "type", None) != "web_search_tool_result":
                continue
            content = getattr(block, "content", None)
            if isinstance(content, list):
                for result in content:
                    urls.append(getattr(result, "url", None))
        return urls

    def _generate_structured(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        payload = self._payload(question, params, search)
        tools = list(payload.get("tools") or [])
        tools.append(
            {
                "name": ENTITY_TOOL_NAME,
                "description": "Record the single entity that answers the user's question.",
                "input_schema": entity_json_schema(),
            }
        )
        payload["tools"] = tools
        if search is None:
            payload["tool_choice"] = {"type": "tool", "name": ENTITY_TOOL_NAME}
        try:
            resp = self._client.messages.create(**payload)
        except self._bad_request as e:
            raise StructuredOutputError(f"Structured output rejected: {e}") from e

        for block in getattr(resp, "content", None) or []:
            if getattr(block, "type", None) == "tool_use" and getattr(block, "name", None) == ENTITY_TOOL_NAME:
                return parse_entity_answer(getattr(block, "input", None)), self._sources(resp)
        raise StructuredOutputError(f"No {ENTITY_TOOL_NAME} tool call in response.")

    def _generate_text(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        resp = self._client.messages.create(**self._payload(question, params, search))
        parts: list[str] = []
        for block in getattr(resp, "content", None) or []:
            if getattr(block, "type", None) == "text":
                parts.append(str(getattr(block, "text", "") or ""))
        # With web search the answer follows the tool results; the last text block carries it.
        text = parts[-1] if search is not None and parts else " ".join(p for p in parts if p)
        return text.strip(), self._sources(resp)
