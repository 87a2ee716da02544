from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time

from trendscope.config.load_config import load_app_config
from trendscope.runtime.aggregator import reconcile
from trendscope.runtime.dispatcher import InlineTransport, JobDispatcher
from trendscope.runtime.scheduler import run_sweep
from trendscope.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one trendscope sweep (enqueue due prompts).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env TRENDSCOPE_SQLITE_PATH or data/trendscope.db).",
    )
    parser.add_argument(
        "--prompt-id",
        action="append",
        default=[],
        help="Only consider this prompt (repeatable).",
    )
    parser.add_argument("--force", action="store_true", help="With --prompt-id: ignore the due check.")
    parser.add_argument(
        "--inline",
        action="store_true",
        help="Execute created jobs in this process and wait for them (no API server needed).",
    )
    parser.add_argument("--dry-run", action="store_true", help="Use the synthetic adapter (no provider calls).")
    parser.add_argument("--reconcile", action="store_true", help="Reclaim stale jobs and reconcile runs first.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    logging.basicConfig(
        level=os.getenv("TRENDSCOPE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.force and not args.prompt_id:
        raise SystemExit("--force requires at least one --prompt-id")
    if args.dry_run:
        os.environ["TRENDSCOPE_DRY_RUN"] = "1"
    if args.db_path:
        os.environ["TRENDSCOPE_SQLITE_PATH"] = args.db_path

    cfg = load_app_config()
    store = SQLiteStore()
    dispatcher: JobDispatcher | None = None
    try:
        if args.reconcile:
            result = reconcile(store, cfg)
            logger.info(
                f"reconcile: requeued={result.requeued_jobs} failed={result.failed_jobs} "
                f"executed_runs={result.executed_runs}"
            )

        if args.inline:
            dispatcher = JobDispatcher(cfg.dispatch, InlineTransport(cfg, db_path=str(store.db_path)))
            dispatcher.start()
        else:
            dispatcher = JobDispatcher.from_config(cfg, db_path=str(store.db_path))
            if dispatcher is not None:
                dispatcher.start()

        started = time.time()
        summary = run_sweep(
            store,
            cfg,
            dispatcher=dispatcher,
            prompt_ids=list(args.prompt_id) or None,
            force=bool(args.force),
        )
        if dispatcher is not None:
            dispatcher.join()
            logger.info(f"dispatch finished in {time.time() - started:.1f}s: {dispatcher.status_snapshot()}")

        print(
            json.dumps(
                {
                    "promptCount": summary.prompt_count,
                    "jobsCreated": summary.jobs_created,
                    "batchKey": summary.batch_key,
                    "runs": summary.runs,
                },
                ensure_ascii=False,
                indent=2,
            )
        )
        return 0
    finally:
        if dispatcher is not None:
            dispatcher.stop()
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
