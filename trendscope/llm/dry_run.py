from __future__ import annotations

import hashlib

from trendscope.llm.base import ModelParams, ProviderAdapter, WebSearchConfig


# Synthetic names only; never real entities.
_SYNTHETIC_ENTITIES = (
    "Dry Run Alpha",
    "Dry Run Beta",
    "Dry Run Gamma",
)


def _digest(*parts: str) -> str:
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


class DryRunAdapter(ProviderAdapter):
    """Deterministic offline adapter: same (provider, model, question) -> same answer."""

    def __init__(self, *, provider: str = "dry_run") -> None:
        self.provider = provider

    def _pick(self, question: str, params: ModelParams) -> str:
        h = _digest(self.provider, params.model, question)
        return _SYNTHETIC_ENTITIES[int(h[:8], 16) % len(_SYNTHETIC_ENTITIES)]

    def _synthetic_sources(self, question: str, params: ModelParams, search: WebSearchConfig | None) -> list[str]:
        if search is None:
            return []
        h = _digest(params.model, question)[:12]
        return [f"https://dry-run.invalid/search/{h}"]

    def _generate_structured(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        return self._pick(question, params), self._synthetic_sources(question, params, search)

    def _generate_text(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        # Free-text shape with an explanatory tail.
        entity = self._pick(question, params)
        return f"{entity} - DRY RUN synthetic answer.", self._synthetic_sources(question, params, search)
