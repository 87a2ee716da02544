from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Any

from trendscope.config.load_config import ConfigError
from trendscope.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)

_FREQUENCIES = {"single", "daily", "weekly", "monthly"}


def _web_flag(value: Any, *, where: str) -> bool | None:
    # TOML has no null: "both" stands for "run both variants".
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() == "both":
        return None
    raise ConfigError(f"{where}.use_web_search must be true, false or \"both\", got {value!r}")


def load_seed(path: Path) -> dict[str, list[dict[str, Any]]]:
    """Parse a seed TOML file into plain `models` / `prompts` lists (validated, not yet stored)."""
    if not path.exists():
        raise ConfigError(f"Seed file not found: {path}")
    import tomllib

    raw = tomllib.loads(path.read_text(encoding="utf-8"))

    models: list[dict[str, Any]] = []
    for i, m in enumerate(raw.get("models", []) or []):
        where = f"models[{i}]"
        name = str(m.get("name") or "").strip()
        provider = str(m.get("provider") or "").strip().lower()
        if not name or not provider:
            raise ConfigError(f"{where}: name and provider are required")
        models.append(
            {
                "name": name,
                "provider": provider,
                "category": str(m.get("category") or "general"),
                "supports_object_output": bool(m.get("supports_object_output", False)),
                "supports_temperature": bool(m.get("supports_temperature", True)),
                "has_web_access": bool(m.get("has_web_access", False)),
                "native_web_search": bool(m.get("native_web_search", False)),
                "reasoning": bool(m.get("reasoning", False)),
                "open_weights": bool(m.get("open_weights", False)),
                "knowledge_cutoff": m.get("knowledge_cutoff"),
            }
        )

    prompts: list[dict[str, Any]] = []
    for i, p in enumerate(raw.get("prompts", []) or []):
        where = f"prompts[{i}]"
        question = str(p.get("question") or "").strip()
        category = str(p.get("category") or "").strip()
        if not question or not category:
            raise ConfigError(f"{where}: question and category are required")
        frequency = str(p.get("frequency") or "single").strip().lower()
        if frequency not in _FREQUENCIES:
            raise ConfigError(f"{where}.frequency must be one of {sorted(_FREQUENCIES)}")
        runs = int(p.get("runs", 1))
        if runs < 1:
            raise ConfigError(f"{where}.runs must be >= 1")
        model_names = [str(x) for x in (p.get("models") or [])]
        if not model_names:
            raise ConfigError(f"{where}.models must list at least one model name")
        prompts.append(
            {
                "category": category,
                "question": question,
                "frequency": frequency,
                "runs": runs,
                "use_web_search": _web_flag(p.get("use_web_search", False), where=where),
                "active": bool(p.get("active", True)),
                "is_highlighted": bool(p.get("is_highlighted", False)),
                "models": model_names,
            }
        )
    return {"models": models, "prompts": prompts}


def apply_seed(store: SQLiteStore, seed: dict[str, list[dict[str, Any]]]) -> dict[str, int]:
    """Upsert models, then create prompts that do not exist yet (matched on category + question)."""
    by_name: dict[str, str] = {}
    for m in seed["models"]:
        rec = store.upsert_model(**m)
        by_name[rec.name] = rec.model_id

    existing = {(p.category, p.question) for p in store.list_prompts()}
    created = 0
    for p in seed["prompts"]:
        if (p["category"], p["question"]) in existing:
            continue
        missing = [n for n in p["models"] if n not in by_name]
        if missing:
            raise ConfigError(f"Prompt {p['question']!r} references unknown models: {missing}")
        store.create_prompt(
            category=p["category"],
            question=p["question"],
            model_ids=[by_name[n] for n in p["models"]],
            frequency=p["frequency"],
            runs=p["runs"],
            use_web_search=p["use_web_search"],
            active=p["active"],
            is_highlighted=p["is_highlighted"],
        )
        existing.add((p["category"], p["question"]))
        created += 1
    return {"models": len(seed["models"]), "prompts_created": created}


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load models and prompts from a TOML seed file.")
    parser.add_argument("seed", help="Path to the seed TOML (see config/seed.example.toml).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env TRENDSCOPE_SQLITE_PATH or data/trendscope.db).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    logging.basicConfig(
        level=os.getenv("TRENDSCOPE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    seed = load_seed(Path(args.seed).expanduser().resolve())
    store = SQLiteStore(args.db_path or None)
    try:
        result = apply_seed(store, seed)
    finally:
        store.close()
    logger.info(f"seed applied: models={result['models']} prompts_created={result['prompts_created']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
