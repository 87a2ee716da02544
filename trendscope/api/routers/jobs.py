from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from trendscope.api.dependencies import get_adapter_registry, require_cron_secret
from trendscope.api.errors import APIError
from trendscope.config.load_config import load_app_config
from trendscope.llm.registry import AdapterRegistry
from trendscope.runtime.executor import JobExecutor, JobNotFoundError
from trendscope.storage.sqlite_store import JOB_STATUSES, SQLiteStore


router = APIRouter(dependencies=[Depends(require_cron_secret)])


class ProcessJobRequest(BaseModel):
    jobId: str | None = Field(default=None)


class ReplayRequest(BaseModel):
    promptRunId: str | None = Field(default=None)
    limit: int = Field(default=500, ge=1, le=5000)


@router.post("/jobs/process")
def process_job(
    body: ProcessJobRequest,
    registry: AdapterRegistry = Depends(get_adapter_registry),
) -> Any:
    job_id = (body.jobId or "").strip()
    if not job_id:
        raise APIError(status_code=400, code="invalid_argument", message="jobId is required.")

    cfg = load_app_config()
    store = SQLiteStore()
    try:
        outcome = JobExecutor(store, cfg, registry=registry).process(job_id)
    except JobNotFoundError as e:
        raise APIError(status_code=404, code="not_found", message="Job not found.", details={"jobId": job_id}) from e
    finally:
        store.close()

    if outcome.already_processed:
        return {
            "success": True,
            "jobId": outcome.job_id,
            "status": outcome.status,
            "message": "Job already processed",
        }
    if not outcome.success:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "jobId": outcome.job_id,
                "status": outcome.status,
                "error": outcome.error,
            },
        )
    return {
        "success": True,
        "jobId": outcome.job_id,
        "status": outcome.status,
        "entityId": outcome.entity_id,
        "entity": outcome.entity_name,
    }


@router.get("/jobs/status")
def jobs_status(
    jobId: str | None = Query(default=None),
    promptRunId: str | None = Query(default=None),
    promptId: str | None = Query(default=None),
    batchKey: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> dict[str, Any]:
    if status is not None and status not in JOB_STATUSES:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"status must be one of {list(JOB_STATUSES)}.",
            details={"status": status},
        )
    cfg = load_app_config()
    store = SQLiteStore()
    try:
        jobs = store.list_jobs(
            job_id=jobId,
            prompt_run_id=promptRunId,
            prompt_id=promptId,
            batch_key=batchKey,
            status=status,
            limit=cfg.limits.status_query_limit,
        )
    finally:
        store.close()

    summary: dict[str, int] = {"total": len(jobs), **{s: 0 for s in JOB_STATUSES}}
    for item in jobs:
        s = item["job"]["status"]
        if s in summary:
            summary[s] += 1
    return {"success": True, "summary": summary, "jobs": jobs}


@router.post("/jobs/replay")
def replay_jobs(request: Request, body: ReplayRequest | None = None) -> dict[str, Any]:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise APIError(status_code=409, code="conflict", message="Dispatcher is not running in this process.")
    req = body or ReplayRequest()
    store = SQLiteStore()
    try:
        job_ids = store.list_queued_job_ids(prompt_run_id=req.promptRunId, limit=req.limit)
    finally:
        store.close()
    submitted = dispatcher.submit(job_ids)
    return {"success": True, "submitted": submitted, "jobIds": job_ids}
