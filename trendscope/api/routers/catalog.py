from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from trendscope.api.dependencies import require_cron_secret
from trendscope.storage.sqlite_store import ModelRecord, SQLiteStore


router = APIRouter()


class CreateModelRequest(BaseModel):
    name: str = Field(min_length=1, description="Provider-side model name, e.g. 'openai/gpt-4o'.")
    provider: str = Field(min_length=1)
    category: str = Field(default="general")
    supportsObjectOutput: bool = Field(default=False)
    supportsTemperature: bool = Field(default=True)
    hasWebAccess: bool = Field(default=False)
    nativeWebSearch: bool = Field(default=False)
    reasoning: bool = Field(default=False)
    openWeights: bool = Field(default=False)
    knowledgeCutoff: str | None = Field(default=None)


def model_dict(m: ModelRecord) -> dict[str, Any]:
    return {
        "id": m.model_id,
        "name": m.name,
        "provider": m.provider,
        "category": m.category,
        "supportsObjectOutput": m.supports_object_output,
        "supportsTemperature": m.supports_temperature,
        "hasWebAccess": m.has_web_access,
        "nativeWebSearch": m.native_web_search,
        "reasoning": m.reasoning,
        "openWeights": m.open_weights,
        "knowledgeCutoff": m.knowledge_cutoff,
    }


@router.get("/models")
def list_models() -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"models": [model_dict(m) for m in store.list_models()]}
    finally:
        store.close()


@router.post("/models", dependencies=[Depends(require_cron_secret)])
def upsert_model(body: CreateModelRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        model = store.upsert_model(
            name=body.name.strip(),
            provider=body.provider.strip().lower(),
            category=body.category.strip() or "general",
            supports_object_output=body.supportsObjectOutput,
            supports_temperature=body.supportsTemperature,
            has_web_access=body.hasWebAccess,
            native_web_search=body.nativeWebSearch,
            reasoning=body.reasoning,
            open_weights=body.openWeights,
            knowledge_cutoff=body.knowledgeCutoff,
        )
        return {"model": model_dict(model)}
    finally:
        store.close()


@router.get("/entities")
def list_entities(
    category: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"entities": store.list_entities(category=category, limit=limit)}
    finally:
        store.close()
