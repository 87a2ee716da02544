from __future__ import annotations

import logging
import threading
from typing import Callable

from trendscope.config.load_config import AppConfig, ProviderConfig
from trendscope.llm.anthropic_adapter import AnthropicAdapter
from trendscope.llm.base import LLMConfigError, ProviderAdapter
from trendscope.llm.dry_run import DryRunAdapter
from trendscope.llm.google_adapter import GoogleAdapter
from trendscope.llm.openai_compat import OpenAIChatAdapter, OpenAIResponsesAdapter


logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openrouter"

AdapterFactory = Callable[[ProviderConfig], ProviderAdapter]


def _openai(pc: ProviderConfig) -> ProviderAdapter:
    return OpenAIResponsesAdapter(api_key=pc.api_key(), base_url=pc.base_url)


def _anthropic(pc: ProviderConfig) -> ProviderAdapter:
    return AnthropicAdapter(api_key=pc.api_key())


def _google(pc: ProviderConfig) -> ProviderAdapter:
    return GoogleAdapter(api_key=pc.api_key())


def _xai(pc: ProviderConfig) -> ProviderAdapter:
    return OpenAIChatAdapter(api_key=pc.api_key(), base_url=pc.base_url, provider="xai")


def _openrouter(pc: ProviderConfig) -> ProviderAdapter:
    return OpenAIChatAdapter(api_key=pc.api_key(), base_url=pc.base_url, provider="openrouter")


FACTORIES: dict[str, AdapterFactory] = {
    "openai": _openai,
    "anthropic": _anthropic,
    "google": _google,
    "xai": _xai,
    "openrouter": _openrouter,
}


class AdapterRegistry:
    """Provider name -> adapter, built lazily and cached per process.

    Lookup is case-insensitive; any provider without a dedicated adapter is
    served by the default OpenAI-compatible gateway.
    """

    def __init__(self, cfg: AppConfig, *, factories: dict[str, AdapterFactory] | None = None) -> None:
        self._cfg = cfg
        self._factories = dict(FACTORIES if factories is None else factories)
        self._cache: dict[str, ProviderAdapter] = {}
        self._lock = threading.Lock()

    def resolve_name(self, provider: str) -> str:
        name = (provider or "").strip().lower()
        return name if name in self._factories else DEFAULT_PROVIDER

    def get(self, provider: str) -> ProviderAdapter:
        name = self.resolve_name(provider)
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None:
                return cached
            adapter = self._build(name)
            self._cache[name] = adapter
            return adapter

    def _build(self, name: str) -> ProviderAdapter:
        if self._cfg.executor.dry_run:
            logger.info(f"dry_run enabled: using synthetic adapter for provider={name}")
            return DryRunAdapter(provider=name)
        pc = self._cfg.providers.get(name)
        if pc is None:
            raise LLMConfigError(f"No [providers.{name}] section in config.")
        return self._factories[name](pc)
