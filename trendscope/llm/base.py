from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger(__name__)


class LLMConfigError(RuntimeError):
    pass


class GenerationError(RuntimeError):
    """The provider call failed (network, auth, refusal, empty answer)."""


class StructuredOutputError(RuntimeError):
    """Structured output was rejected or unparseable; the caller may fall back to text."""


class EntityAnswer(BaseModel):
    entity: str = Field(min_length=1, max_length=64, description="The single entity name.")


ENTITY_TOOL_NAME = "record_entity"


def entity_json_schema() -> dict[str, Any]:
    schema = EntityAnswer.model_json_schema()
    schema["additionalProperties"] = False
    return schema


def parse_entity_answer(payload: Any) -> str:
    """Validate a structured payload (dict, JSON string or EntityAnswer) and return the entity."""
    if isinstance(payload, EntityAnswer):
        return payload.entity
    try:
        if isinstance(payload, (str, bytes)):
            answer = EntityAnswer.model_validate_json(payload)
        else:
            answer = EntityAnswer.model_validate(payload)
    except ValidationError as e:
        raise StructuredOutputError(f"Invalid entity payload: {e.error_count()} validation error(s)") from e
    return answer.entity


@dataclass(frozen=True)
class ModelParams:
    model: str
    system: str
    temperature: float | None = None
    supports_object_output: bool = False
    max_output_tokens: int = 256


@dataclass(frozen=True)
class WebSearchConfig:
    # openai: search_context_size; anthropic: max_uses; xai: live search mode.
    context_size: str = "high"
    max_uses: int = 3
    mode: str = "on"


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    sources: list[str] | None
    generation_type: str


def dedupe_urls(urls: list[Any]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for u in urls:
        if not isinstance(u, str):
            continue
        s = u.strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


class ProviderAdapter(ABC):
    """One implementation per provider family.

    Subclasses implement the two raw calls; this base class owns the
    structured-then-text strategy and the error contract:
    `StructuredOutputError` from the first stage triggers the text fallback,
    anything else surfaces as `GenerationError`.
    """

    provider: str = ""

    def respond(self, question: str, params: ModelParams) -> ProviderResponse:
        return self._two_stage(question, params, search=None)

    def respond_with_web_search(
        self, question: str, params: ModelParams, search_config: WebSearchConfig | None = None
    ) -> ProviderResponse:
        return self._two_stage(question, params, search=search_config or WebSearchConfig())

    @abstractmethod
    def _generate_structured(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        """Return (entity, sources); raise StructuredOutputError when the schema path fails."""

    @abstractmethod
    def _generate_text(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        """Return (free text, sources)."""

    def _two_stage(self, question: str, params: ModelParams, *, search: WebSearchConfig | None) -> ProviderResponse:
        web = search is not None
        if params.supports_object_output:
            try:
                entity, sources = self._generate_structured(question, params, search)
                return ProviderResponse(
                    text=entity,
                    sources=dedupe_urls(sources) if web else None,
                    generation_type="object",
                )
            except StructuredOutputError as e:
                logger.info(f"[{self.provider}:{params.model}] structured output failed, falling back to text: {e}")
            except GenerationError:
                raise
            except Exception as e:
                raise GenerationError(f"{type(e).__name__}: {e}") from e

        try:
            text, sources = self._generate_text(question, params, search)
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"{type(e).__name__}: {e}") from e

        if not (text or "").strip():
            raise GenerationError(f"Empty response from {self.provider}:{params.model}")
        return ProviderResponse(
            text=text.strip(),
            sources=dedupe_urls(sources) if web else None,
            generation_type="text",
        )
