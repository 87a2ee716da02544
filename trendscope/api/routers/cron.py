from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from trendscope.api.dependencies import require_cron_secret
from trendscope.config.load_config import load_app_config
from trendscope.runtime.aggregator import reconcile
from trendscope.runtime.scheduler import run_sweep
from trendscope.storage.sqlite_store import SQLiteStore


router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.api_route("/cron/sweep", methods=["GET", "POST"])
def cron_sweep(request: Request) -> dict[str, Any]:
    cfg = load_app_config()
    store = SQLiteStore()
    try:
        summary = run_sweep(store, cfg, dispatcher=getattr(request.app.state, "dispatcher", None))
    finally:
        store.close()
    return {
        "success": True,
        "message": f"Scheduled {summary.jobs_created} job(s) for {summary.prompt_count} prompt(s).",
        "promptCount": summary.prompt_count,
        "jobsCreated": summary.jobs_created,
        "batchKey": summary.batch_key,
        "runs": summary.runs,
    }


@router.post("/runs/reconcile")
def runs_reconcile() -> dict[str, Any]:
    cfg = load_app_config()
    store = SQLiteStore()
    try:
        result = reconcile(store, cfg)
    finally:
        store.close()
    return {
        "success": True,
        "requeuedJobs": result.requeued_jobs,
        "failedJobs": result.failed_jobs,
        "executedRuns": result.executed_runs,
    }
