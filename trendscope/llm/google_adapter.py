from __future__ import annotations

from typing import Any

from trendscope.llm.base import (
    EntityAnswer,
    LLMConfigError,
    ModelParams,
    ProviderAdapter,
    StructuredOutputError,
    WebSearchConfig,
    parse_entity_answer,
)


class GoogleAdapter(ProviderAdapter):
    """Gemini models via google-genai, grounded with the `google_search` tool."""

    provider = "google"

    def __init__(self, *, api_key: str | None) -> None:
        if not api_key:
            raise LLMConfigError("Missing GOOGLE_API_KEY.")
        try:
            from google import genai  # type: ignore
            from google.genai import errors as genai_errors  # type: ignore
        except Exception as e:
            raise LLMConfigError("Missing dependency: google-genai. Install it in the runtime environment.") from e
        self._genai = genai
        self._client = genai.Client(api_key=api_key)
        self._bad_request = genai_errors.ClientError

    def _config(self, params: ModelParams, search: WebSearchConfig | None, *, structured: bool) -> Any:
        types = self._genai.types
        kwargs: dict[str, Any] = {
            "system_instruction": params.system,
            "max_output_tokens": int(params.max_output_tokens),
        }
        if params.temperature is not None:
            kwargs["temperature"] = float(params.temperature)
        if search is not None:
            kwargs["tools"] = [types.Tool(google_search=types.GoogleSearch())]
        if structured:
            kwargs["response_mime_type"] = "application/json"
            kwargs["response_schema"] = EntityAnswer
        return types.GenerateContentConfig(**kwargs)

    @staticmethod
    def _sources(resp: Any) -> list[str]:
        urls: list[str] = []
        for cand in getattr(resp, "candidates", None) or []:
            meta = getattr(cand, "grounding_metadata", None)
            for chunk in getattr(meta, "grounding_chunks", None) or []:
                web = getattr(chunk, "web", None)
                if web is not None:
                    urls.append(getattr(web, "uri", None))
        return urls

    def _generate_structured(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        try:
            resp = self._client.models.generate_content(
                model=params.model,
                contents=question,
                config=self._config(params, search, structured=True),
            )
        except self._bad_request as e:
            raise StructuredOutputError(f"Structured output rejected: {e}") from e
        parsed = getattr(resp, "parsed", None)
        if parsed is not None:
            return parse_entity_answer(parsed), self._sources(resp)
        text = getattr(resp, "text", None)
        if not text:
            raise StructuredOutputError("Empty structured output.")
        return parse_entity_answer(text), self._sources(resp)

    def _generate_text(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        resp = self._client.models.generate_content(
            model=params.model,
            contents=question,
            config=self._config(params, search, structured=False),
        )
        return str(getattr(resp, "text", "") or ""), self._sources(resp)
