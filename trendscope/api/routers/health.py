from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from trendscope.storage.sqlite_store import SCHEMA_VERSION
from trendscope.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "trendscope",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "openai": _pkg_version("openai"),
            "anthropic": _pkg_version("anthropic"),
            "google-genai": _pkg_version("google-genai"),
        },
        "ts": time.time(),
    }


@router.get("/system/dispatcher")
def system_dispatcher(request: Request) -> dict[str, Any]:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    snapshot: dict[str, Any] = {"enabled": dispatcher is not None, "running": False}
    if dispatcher is not None:
        snapshot.update(dispatcher.status_snapshot())

    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "dispatcher": snapshot,
            "queue": {
                "jobs_by_status": store.count_jobs_by_status(),
                "runs_by_execution_status": store.count_runs_by_execution_status(),
            },
            "startup": getattr(request.app.state, "startup_reconcile", {}),
        }
    finally:
        store.close()
