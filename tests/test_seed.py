from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from conftest import REPO_ROOT
from trendscope.cli.seed import apply_seed, load_seed
from trendscope.config.load_config import ConfigError
from trendscope.storage.sqlite_store import SQLiteStore


EXAMPLE = REPO_ROOT / "config" / "seed.example.toml"


def test_example_seed_parses() -> None:
    seed = load_seed(EXAMPLE)
    assert len(seed["models"]) == 5
    tv, programming = seed["prompts"]
    assert tv["use_web_search"] is None
    assert programming["use_web_search"] is False
    assert programming["runs"] == 2


def test_apply_seed_is_repeatable(store: SQLiteStore) -> None:
    seed = load_seed(EXAMPLE)

    first = apply_seed(store, seed)
    second = apply_seed(store, seed)

    assert first == {"models": 5, "prompts_created": 2}
    assert second == {"models": 5, "prompts_created": 0}
    assert len(store.list_models()) == 5
    prompts = store.list_prompts(highlighted_only=True)
    assert [p.category for p in prompts] == ["tv"]
    assert len(prompts[0].model_ids) == 3


@pytest.mark.parametrize(
    "body",
    [
        '[[prompts]]\ncategory = "tv"\nquestion = "q"\nmodels = ["m"]\nfrequency = "hourly"\n',
        '[[prompts]]\ncategory = "tv"\nquestion = "q"\nmodels = ["m"]\nuse_web_search = "sometimes"\n',
        '[[prompts]]\ncategory = "tv"\nquestion = "q"\nmodels = []\n',
        '[[models]]\nname = "m"\n',
    ],
)
def test_invalid_seed_rejected(body: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        path = Path(os.path.join(td, "seed.toml"))
        path.write_text(body, encoding="utf-8")
        with pytest.raises(ConfigError):
            load_seed(path)


def test_unknown_model_reference_rejected(store: SQLiteStore) -> None:
    seed = {
        "models": [],
        "prompts": [
            {
                "category": "tv",
                "question": "q",
                "frequency": "daily",
                "runs": 1,
                "use_web_search": False,
                "active": True,
                "is_highlighted": False,
                "models": ["ghost"],
            }
        ],
    }
    with pytest.raises(ConfigError):
        apply_seed(store, seed)
