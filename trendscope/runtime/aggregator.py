from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from trendscope.config.load_config import AppConfig
from trendscope.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)

RECLAIM_REASON = "lease_expired: executor did not finish the job in time"


@dataclass(frozen=True)
class ReconcileSummary:
    requeued_jobs: int
    failed_jobs: int
    executed_runs: int


def finalize_run(store: SQLiteStore, prompt_run_id: str) -> bool:
    """Called after every terminal job transition; flips the run once all jobs are counted."""
    flipped = store.mark_run_executed_if_finished(prompt_run_id)
    if flipped:
        logger.info(f"prompt_run {prompt_run_id} executed")
    return flipped


def reconcile_runs(store: SQLiteStore) -> int:
    """Mark every fully-enqueued pending run with no open jobs as executed.

    Covers runs whose last job ended in a state that does not move a counter
    (e.g. `skipped`), or whose final counter update raced a crash.
    """
    flipped = 0
    for run_id in store.list_pending_run_ids():
        if store.mark_run_executed_if_finished(run_id):
            flipped += 1
            continue
        run = store.get_prompt_run(prompt_run_id=run_id)
        if run is None or run.status != "completed" or run.total_jobs <= 0:
            continue
        if store.count_open_jobs(run_id) == 0 and store.mark_run_executed(run_id):
            flipped += 1
    return flipped


def reclaim_stale_jobs(store: SQLiteStore, cfg: AppConfig, *, now: float | None = None) -> dict[str, int]:
    """Return jobs whose lease expired to the queue, or fail them once out of attempts."""
    ts = time.time() if now is None else float(now)
    result = store.reclaim_stale_jobs(
        started_before=ts - float(cfg.executor.lease_timeout_s),
        max_attempts=int(cfg.executor.max_attempts),
        reason=RECLAIM_REASON,
    )
    if result["requeued"] or result["failed"]:
        logger.warning(f"reclaimed stale jobs: requeued={result['requeued']} failed={result['failed']}")
    return result


def reconcile(store: SQLiteStore, cfg: AppConfig, *, now: float | None = None) -> ReconcileSummary:
    reclaimed = reclaim_stale_jobs(store, cfg, now=now)
    executed = reconcile_runs(store)
    return ReconcileSummary(
        requeued_jobs=int(reclaimed["requeued"]),
        failed_jobs=int(reclaimed["failed"]),
        executed_runs=int(executed),
    )
