from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from trendscope.config.load_config import AppConfig
from trendscope.storage.sqlite_store import PromptRecord, SQLiteStore


logger = logging.getLogger(__name__)


class JobSink(Protocol):
    def submit(self, job_ids: list[str]) -> int: ...


@dataclass(frozen=True)
class SweepSummary:
    prompt_count: int
    jobs_created: int
    batch_key: str
    job_ids: list[str] = field(default_factory=list)
    runs: list[dict[str, Any]] = field(default_factory=list)


def batch_key_for(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%d")


def utc_day_start(ts: float) -> float:
    d = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return d.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


def due_cutoff(cfg: AppConfig, now: float) -> float:
    """A daily prompt whose last run is strictly before this timestamp is due."""
    if cfg.scheduler.due_policy == "rolling_24h":
        return float(now) - float(cfg.scheduler.rolling_window_hours) * 3600.0
    return utc_day_start(now)


def is_due(prompt: PromptRecord, *, cutoff: float) -> bool:
    if not prompt.active or prompt.frequency != "daily":
        return False
    return prompt.last_run_at is None or prompt.last_run_at < cutoff


def job_variants(prompt: PromptRecord, *, max_runs: int) -> list[tuple[int, bool]]:
    """(run_index, using_web_search) pairs for one model.

    `use_web_search=None` means both variants, each with its own index range.
    """
    capped = max(0, min(int(prompt.runs), int(max_runs)))
    if prompt.use_web_search is None:
        flags = [False, True]
    else:
        flags = [bool(prompt.use_web_search)]
    return [(i, web) for web in flags for i in range(capped)]


def effective_runs(prompt: PromptRecord, *, max_runs: int) -> int:
    return len(job_variants(prompt, max_runs=max_runs))


def _fan_out(
    store: SQLiteStore, cfg: AppConfig, prompt: PromptRecord, *, batch_key: str, now: float
) -> dict[str, Any]:
    models = store.get_models(prompt.model_ids)
    variants = job_variants(prompt, max_runs=cfg.limits.max_runs)
    expected = len(variants) * len(models)
    if expected == 0:
        logger.warning(f"prompt {prompt.prompt_id}: no resolvable models or runs; nothing to enqueue")
        store.set_prompt_last_run_at(prompt.prompt_id, now)
        return {
            "prompt_id": prompt.prompt_id,
            "prompt_run_id": None,
            "created_run": False,
            "jobs_created": 0,
            "failed_pairs": 0,
            "total_jobs": 0,
            "job_ids": [],
        }

    run, created_run = store.get_or_create_prompt_run(
        prompt_id=prompt.prompt_id, batch_key=batch_key, total_jobs=expected
    )

    job_ids: list[str] = []
    failed_pairs = 0
    for model in models:
        for run_index, web in variants:
            try:
                job_id = store.insert_job_if_absent(
                    prompt_run_id=run.prompt_run_id,
                    model_id=model.model_id,
                    run_index=run_index,
                    using_web_search=web,
                    scheduled_for=now,
                )
            except Exception as e:
                failed_pairs += 1
                logger.exception(
                    f"prompt {prompt.prompt_id}: job model={model.model_id} run_index={run_index} "
                    f"web={web} not created: {e}"
                )
                continue
            if job_id is not None:
                job_ids.append(job_id)

    total_jobs = store.sync_run_total_jobs(run.prompt_run_id)
    if job_ids and not created_run:
        store.reopen_run_execution(run.prompt_run_id)
    store.update_prompt_run_status(run.prompt_run_id, "completed")
    store.set_prompt_last_run_at(prompt.prompt_id, now)

    if len(models) < len(prompt.model_ids):
        logger.warning(
            f"prompt {prompt.prompt_id}: {len(prompt.model_ids) - len(models)} unknown model id(s) ignored"
        )
    logger.info(
        f"prompt {prompt.prompt_id}: run={run.prompt_run_id} batch={batch_key} "
        f"created_jobs={len(job_ids)} failed_pairs={failed_pairs} total_jobs={total_jobs}"
    )
    return {
        "prompt_id": prompt.prompt_id,
        "prompt_run_id": run.prompt_run_id,
        "created_run": created_run,
        "jobs_created": len(job_ids),
        "failed_pairs": failed_pairs,
        "total_jobs": total_jobs,
        "job_ids": job_ids,
    }


def run_sweep(
    store: SQLiteStore,
    cfg: AppConfig,
    *,
    now: float | None = None,
    dispatcher: JobSink | None = None,
    prompt_ids: list[str] | None = None,
    force: bool = False,
) -> SweepSummary:
    """Turn every due prompt into one PromptRun plus its queued PromptJobs.

    Re-entrant within a batch window: the run for (prompt, batch_key) and every
    (run, model, run_index, web) job are insert-or-ignore, so a repeated sweep
    creates nothing new. A failure creating one job is logged and skipped;
    a failure on one prompt is logged and does not stop the others. `force`
    (only with explicit `prompt_ids`) skips the due check.
    """
    ts = time.time() if now is None else float(now)
    batch_key = batch_key_for(ts)
    cutoff = due_cutoff(cfg, ts)

    if prompt_ids:
        prompts = []
        for pid in prompt_ids:
            prompt = store.get_prompt(prompt_id=pid)
            if prompt is None:
                logger.warning(f"sweep: unknown prompt id {pid}")
                continue
            if force or is_due(prompt, cutoff=cutoff):
                prompts.append(prompt)
    else:
        prompts = store.list_due_prompts(cutoff=cutoff)

    all_job_ids: list[str] = []
    runs: list[dict[str, Any]] = []
    for prompt in prompts:
        try:
            result = _fan_out(store, cfg, prompt, batch_key=batch_key, now=ts)
        except Exception as e:
            logger.exception(f"sweep: prompt {prompt.prompt_id} failed: {e}")
            runs.append({"prompt_id": prompt.prompt_id, "error": f"{type(e).__name__}: {e}"})
            continue
        new_ids = list(result.pop("job_ids"))
        runs.append(result)
        all_job_ids.extend(new_ids)
        if dispatcher is not None and new_ids:
            dispatcher.submit(new_ids)

    logger.info(f"sweep {batch_key}: prompts={len(prompts)} jobs_created={len(all_job_ids)}")
    return SweepSummary(
        prompt_count=len(prompts),
        jobs_created=len(all_job_ids),
        batch_key=batch_key,
        job_ids=all_job_ids,
        runs=runs,
    )
