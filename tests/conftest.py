from __future__ import annotations

import os
import sys
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest


# Ensure `import trendscope...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
os.environ.setdefault("TRENDSCOPE_CONFIG_PATH", str(REPO_ROOT / "config" / "default.toml"))

from trendscope.llm.base import ModelParams, ProviderAdapter, StructuredOutputError, WebSearchConfig  # noqa: E402
from trendscope.storage.sqlite_store import PromptRecord, SQLiteStore  # noqa: E402


CRON_SECRET = "test-secret"


class ScriptedAdapter(ProviderAdapter):
    """Offline adapter that replays scripted answers (strings) or raises scripted exceptions.

    The last script item repeats once the script is exhausted.
    """

    provider = "scripted"

    def __init__(self, *answers: Any, structured_fails: bool = True) -> None:
        self._answers = list(answers) or ["Python"]
        self._structured_fails = structured_fails
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str, bool]] = []

    def _next(self, question: str, params: ModelParams, search: WebSearchConfig | None) -> tuple[str, list[str]]:
        with self._lock:
            self.calls.append((question, params.model, search is not None))
            item = self._answers.pop(0) if len(self._answers) > 1 else self._answers[0]
        if isinstance(item, BaseException):
            raise item
        sources = ["https://example.com/source"] if search is not None else []
        return str(item), sources

    def _generate_structured(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        if self._structured_fails:
            raise StructuredOutputError("schema not supported")
        return self._next(question, params, search)

    def _generate_text(
        self, question: str, params: ModelParams, search: WebSearchConfig | None
    ) -> tuple[str, list[str]]:
        return self._next(question, params, search)


class FakeRegistry:
    def __init__(self, adapter: ProviderAdapter) -> None:
        self.adapter = adapter
        self.requested: list[str] = []

    def get(self, provider: str) -> ProviderAdapter:
        self.requested.append(provider)
        return self.adapter


@pytest.fixture()
def db_path(monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    with tempfile.TemporaryDirectory() as td:
        path = os.path.join(td, "trendscope.db")
        monkeypatch.setenv("TRENDSCOPE_SQLITE_PATH", path)
        monkeypatch.setenv("TRENDSCOPE_CRON_SECRET", CRON_SECRET)
        monkeypatch.setenv("TRENDSCOPE_ENABLE_DISPATCHER", "0")
        monkeypatch.delenv("TRENDSCOPE_DRY_RUN", raising=False)
        monkeypatch.delenv("TRENDSCOPE_DISPATCH_MODE", raising=False)
        yield path


@pytest.fixture()
def store(db_path: str) -> Iterator[SQLiteStore]:
    s = SQLiteStore(db_path)
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def make_prompt() -> Callable[..., PromptRecord]:
    def _make(
        store: SQLiteStore,
        *,
        runs: int = 3,
        use_web_search: bool | None = False,
        n_models: int = 2,
        frequency: str = "daily",
        active: bool = True,
        supports_object_output: bool = False,
        question: str = "What is the best TV show of all time?",
    ) -> PromptRecord:
        model_ids = []
        for i in range(n_models):
            m = store.upsert_model(
                name=f"vendor/model-{i}",
                provider="openrouter",
                supports_object_output=supports_object_output,
                supports_temperature=True,
            )
            model_ids.append(m.model_id)
        return store.create_prompt(
            category="tv",
            question=question,
            model_ids=model_ids,
            frequency=frequency,
            runs=runs,
            use_web_search=use_web_search,
            active=active,
        )

    return _make
