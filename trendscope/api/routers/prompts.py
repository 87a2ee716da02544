from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from trendscope.api.dependencies import require_cron_secret
from trendscope.api.errors import APIError
from trendscope.config.load_config import load_app_config
from trendscope.runtime.scheduler import batch_key_for, run_sweep
from trendscope.storage.sqlite_store import PromptRecord, PromptRunRecord, SQLiteStore


router = APIRouter()


class CreatePromptRequest(BaseModel):
    category: str = Field(min_length=1)
    question: str = Field(min_length=1)
    modelIds: list[str] = Field(min_length=1)
    frequency: Literal["single", "daily", "weekly", "monthly"] = Field(default="single")
    runs: int = Field(default=1, ge=1)
    useWebSearch: bool | None = Field(default=False, description="null runs both variants.")
    active: bool = Field(default=True)
    isHighlighted: bool = Field(default=False)


def prompt_dict(p: PromptRecord) -> dict[str, Any]:
    return {
        "id": p.prompt_id,
        "category": p.category,
        "question": p.question,
        "frequency": p.frequency,
        "runs": p.runs,
        "useWebSearch": p.use_web_search,
        "active": p.active,
        "isHighlighted": p.is_highlighted,
        "modelIds": list(p.model_ids),
        "lastRunAt": p.last_run_at,
        "lastResponseAt": p.last_response_at,
        "createdAt": p.created_at,
    }


def run_dict(r: PromptRunRecord) -> dict[str, Any]:
    return {
        "id": r.prompt_run_id,
        "promptId": r.prompt_id,
        "status": r.status,
        "executionStatus": r.execution_status,
        "batchKey": r.batch_key,
        "totalJobs": r.total_jobs,
        "successfulJobs": r.successful_jobs,
        "failedJobs": r.failed_jobs,
        "createdAt": r.created_at,
        "updatedAt": r.updated_at,
        "executedAt": r.executed_at,
    }


def _day_bounds(day: str) -> tuple[float, float]:
    try:
        d = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise APIError(
            status_code=400, code="invalid_argument", message="day must be YYYY-MM-DD.", details={"day": day}
        ) from e
    start = d.timestamp()
    return start, start + 86400.0


def _short_model_name(name: str | None) -> str:
    # "openai/gpt-4o" -> "gpt-4o"
    return (name or "unknown").split("/")[-1]


@router.get("/prompts")
def list_prompts(
    active: bool = Query(default=False, description="Only active prompts."),
    highlighted: bool = Query(default=False, description="Only highlighted prompts."),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        prompts = store.list_prompts(active_only=active, highlighted_only=highlighted)
        return {"prompts": [prompt_dict(p) for p in prompts]}
    finally:
        store.close()


@router.get("/prompts/{prompt_id}")
def get_prompt(prompt_id: str, runs_limit: int = Query(default=10, ge=1, le=100)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        prompt = store.get_prompt(prompt_id=prompt_id)
        if prompt is None:
            raise APIError(status_code=404, code="not_found", message="Prompt not found.")
        runs = store.list_runs(prompt_id=prompt_id, limit=runs_limit)
        return {"prompt": prompt_dict(prompt), "runs": [run_dict(r) for r in runs]}
    finally:
        store.close()


@router.get("/prompts/{prompt_id}/analytics")
def prompt_analytics(prompt_id: str, day: str | None = Query(default=None)) -> dict[str, Any]:
    """Entity x model mention counts for one UTC day (default: the prompt's last run day)."""
    store = SQLiteStore()
    try:
        prompt = store.get_prompt(prompt_id=prompt_id)
        if prompt is None:
            raise APIError(status_code=404, code="not_found", message="Prompt not found.")
        if not day:
            day = batch_key_for(prompt.last_run_at if prompt.last_run_at is not None else time.time())
        start, end = _day_bounds(day)
        rows = store.count_mentions_by_entity_and_model(prompt_id=prompt_id, start_ts=start, end_ts=end)
    finally:
        store.close()

    by_entity: dict[str, dict[str, int]] = {}
    models: set[str] = set()
    for r in rows:
        entity = str(r["entity"] or "unknown")
        model = _short_model_name(r["model"])
        models.add(model)
        counts = by_entity.setdefault(entity, {})
        counts[model] = counts.get(model, 0) + int(r["n"])

    entities = [
        {"entity": name, "total": sum(counts.values()), "byModel": counts}
        for name, counts in by_entity.items()
    ]
    entities.sort(key=lambda e: (-e["total"], e["entity"]))
    return {"promptId": prompt_id, "day": day, "models": sorted(models), "entities": entities}


@router.post("/prompts", dependencies=[Depends(require_cron_secret)])
def create_prompt(body: CreatePromptRequest) -> dict[str, Any]:
    cfg = load_app_config()
    if body.runs > cfg.limits.max_runs:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"runs must be in [1..{cfg.limits.max_runs}].",
            details={"runs": body.runs},
        )
    store = SQLiteStore()
    try:
        known = {m.model_id for m in store.get_models(body.modelIds)}
        unknown = [m for m in body.modelIds if m not in known]
        if unknown:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message="Unknown model ids.",
                details={"unknown": unknown},
            )
        prompt = store.create_prompt(
            category=body.category.strip(),
            question=body.question.strip(),
            model_ids=list(body.modelIds),
            frequency=body.frequency,
            runs=body.runs,
            use_web_search=body.useWebSearch,
            active=body.active,
            is_highlighted=body.isHighlighted,
        )
        return {"prompt": prompt_dict(prompt)}
    finally:
        store.close()


@router.post("/prompts/{prompt_id}/run", dependencies=[Depends(require_cron_secret)])
def run_prompt_now(prompt_id: str, request: Request) -> dict[str, Any]:
    """Manual run: enqueue today's batch for one prompt regardless of its schedule."""
    cfg = load_app_config()
    store = SQLiteStore()
    try:
        if store.get_prompt(prompt_id=prompt_id) is None:
            raise APIError(status_code=404, code="not_found", message="Prompt not found.")
        summary = run_sweep(
            store,
            cfg,
            dispatcher=getattr(request.app.state, "dispatcher", None),
            prompt_ids=[prompt_id],
            force=True,
        )
    finally:
        store.close()
    return {
        "success": True,
        "promptCount": summary.prompt_count,
        "jobsCreated": summary.jobs_created,
        "batchKey": summary.batch_key,
        "runs": summary.runs,
    }
