from __future__ import annotations

import threading
import time

import pytest

from conftest import FakeRegistry, ScriptedAdapter
from trendscope.config.load_config import load_app_config
from trendscope.llm.base import GenerationError
from trendscope.runtime.executor import JobExecutor, JobNotFoundError
from trendscope.runtime.scheduler import run_sweep
from trendscope.storage.sqlite_store import SQLiteStore


def _sweep(store: SQLiteStore, prompt_id: str) -> list[str]:
    summary = run_sweep(store, load_app_config(), prompt_ids=[prompt_id], force=True)
    return summary.job_ids


def _responses(store: SQLiteStore, prompt_id: str) -> list[dict]:
    return store.list_responses(prompt_id=prompt_id, start_ts=0, end_ts=time.time() + 60)


def test_success_records_normalized_entity(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1)
    (job_id,) = _sweep(store, prompt.prompt_id)
    adapter = ScriptedAdapter("The Last of Us — because it's critically acclaimed.")
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(adapter))

    outcome = executor.process(job_id)

    assert outcome.success is True
    assert outcome.status == "succeeded"
    assert outcome.entity_name == "The Last Of Us"
    assert outcome.already_processed is False

    job = store.get_job(job_id=job_id)
    assert job is not None and job.status == "succeeded"
    run = store.get_prompt_run(prompt_run_id=job.prompt_run_id)
    assert run is not None
    assert (run.successful_jobs, run.failed_jobs) == (1, 0)
    assert run.execution_status == "executed"

    (resp,) = _responses(store, prompt.prompt_id)
    assert resp["entity"] == "The Last Of Us"
    assert resp["web_search_sources"] is None
    assert resp["generation_type"] == "text"
    assert adapter.calls == [(prompt.question, "vendor/model-0", False)]


def test_web_search_job_keeps_sources(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1, use_web_search=True)
    (job_id,) = _sweep(store, prompt.prompt_id)
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(ScriptedAdapter("Severance")))

    assert executor.process(job_id).status == "succeeded"

    (resp,) = _responses(store, prompt.prompt_id)
    assert resp["web_search_sources"] == ["https://example.com/source"]


def test_structured_output_falls_back_to_text(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1, supports_object_output=True)
    (job_id,) = _sweep(store, prompt.prompt_id)
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(ScriptedAdapter("Python")))

    assert executor.process(job_id).status == "succeeded"
    (resp,) = _responses(store, prompt.prompt_id)
    assert resp["generation_type"] == "text"


def test_structured_output_used_when_available(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1, supports_object_output=True)
    (job_id,) = _sweep(store, prompt.prompt_id)
    adapter = ScriptedAdapter('{"entity": "Python"}', structured_fails=False)
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(adapter))

    outcome = executor.process(job_id)
    assert outcome.entity_name == "Python"
    (resp,) = _responses(store, prompt.prompt_id)
    assert resp["generation_type"] == "object"


def test_failure_counts_only_as_failed(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1)
    (job_id,) = _sweep(store, prompt.prompt_id)
    adapter = ScriptedAdapter(GenerationError("provider exploded"))
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(adapter))

    outcome = executor.process(job_id)

    assert outcome.success is False
    assert outcome.status == "failed"
    assert outcome.error is not None and "provider exploded" in outcome.error
    job = store.get_job(job_id=job_id)
    assert job is not None and job.status == "failed" and "provider exploded" in (job.error_message or "")
    run = store.get_prompt_run(prompt_run_id=job.prompt_run_id)
    assert run is not None
    assert (run.successful_jobs, run.failed_jobs) == (0, 1)
    assert run.execution_status == "executed"
    assert store.count_responses(prompt_id=prompt.prompt_id) == 0


def test_empty_entity_is_a_failure(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1)
    (job_id,) = _sweep(store, prompt.prompt_id)
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(ScriptedAdapter('""')))

    outcome = executor.process(job_id)
    assert outcome.status == "failed"
    assert store.count_responses(prompt_id=prompt.prompt_id) == 0


def test_terminal_job_is_not_reprocessed(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1)
    (job_id,) = _sweep(store, prompt.prompt_id)
    adapter = ScriptedAdapter("Breaking Bad")
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(adapter))

    first = executor.process(job_id)
    second = executor.process(job_id)

    assert first.already_processed is False
    assert second.already_processed is True
    assert second.success is True
    assert second.status == "succeeded"
    assert len(adapter.calls) == 1
    assert store.count_responses(prompt_id=prompt.prompt_id) == 1
    row = store.get_entity_by_name("Breaking Bad")
    assert row is not None and int(row["total_mentions"]) == 1


def test_unknown_job_raises(store: SQLiteStore) -> None:
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(ScriptedAdapter()))
    with pytest.raises(JobNotFoundError):
        executor.process("job_missing")


def test_case_variants_share_one_entity(store: SQLiteStore, make_prompt) -> None:
    store.upsert_entity(name="Gpt-5", category="tech")
    prompt = make_prompt(store, runs=2, n_models=1)
    job_ids = _sweep(store, prompt.prompt_id)
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(ScriptedAdapter("gpt-5", "GPT-5")))

    for job_id in job_ids:
        assert executor.process(job_id).entity_name == "Gpt-5"

    row = store.get_entity_by_name("Gpt-5")
    assert row is not None and int(row["total_mentions"]) == 3
    assert store.get_entity_by_name("GPT-5") is None


def test_run_executed_after_mixed_outcomes(store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=2, n_models=1)
    job_ids = _sweep(store, prompt.prompt_id)
    adapter = ScriptedAdapter("React", GenerationError("rate limited"))
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(adapter))

    first = executor.process(job_ids[0])
    job = store.get_job(job_id=job_ids[0])
    assert job is not None
    run = store.get_prompt_run(prompt_run_id=job.prompt_run_id)
    assert first.status == "succeeded"
    assert run is not None and run.execution_status == "pending"

    second = executor.process(job_ids[1])
    run = store.get_prompt_run(prompt_run_id=job.prompt_run_id)
    assert second.status == "failed"
    assert run is not None
    assert (run.successful_jobs, run.failed_jobs, run.total_jobs) == (1, 1, 2)
    assert run.execution_status == "executed"
    assert run.executed_at is not None


def test_concurrent_process_calls_do_work_once(db_path: str, make_prompt) -> None:
    setup = SQLiteStore(db_path)
    try:
        prompt = make_prompt(setup, runs=1, n_models=1)
        (job_id,) = _sweep(setup, prompt.prompt_id)
    finally:
        setup.close()

    adapter = ScriptedAdapter("Dune")
    registry = FakeRegistry(adapter)
    cfg = load_app_config()
    n = 6
    barrier = threading.Barrier(n)
    outcomes = []
    lock = threading.Lock()

    def worker() -> None:
        s = SQLiteStore(db_path)
        try:
            barrier.wait()
            outcome = JobExecutor(s, cfg, registry=registry).process(job_id)
        finally:
            s.close()
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(outcomes) == n
    assert sum(1 for o in outcomes if not o.already_processed) == 1
    assert all(o.success for o in outcomes)
    assert len(adapter.calls) == 1

    check = SQLiteStore(db_path)
    try:
        assert check.count_responses(prompt_id=prompt.prompt_id) == 1
    finally:
        check.close()


class _ReclaimDuringGeneration(ScriptedAdapter):
    """Simulates a second executor: the lease is reclaimed and the job claimed again mid-generation."""

    def __init__(self, db_path: str, job_id: str, *answers: str) -> None:
        super().__init__(*answers)
        self._db_path = db_path
        self._job_id = job_id
        self.second_attempt: int | None = None

    def _generate_text(self, question, params, search):
        other = SQLiteStore(self._db_path)
        try:
            other.reclaim_stale_jobs(started_before=time.time() + 1, max_attempts=3, reason="lease expired")
            claim = other.claim_job(self._job_id)
            assert claim.claimed is True and claim.job is not None
            self.second_attempt = claim.job.attempt_count
        finally:
            other.close()
        return super()._generate_text(question, params, search)


def test_completion_is_dropped_when_job_was_claimed_again(db_path: str, store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1)
    (job_id,) = _sweep(store, prompt.prompt_id)
    adapter = _ReclaimDuringGeneration(db_path, job_id, "Slow Horses")
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(adapter))

    outcome = executor.process(job_id)

    assert adapter.second_attempt == 2
    assert outcome.already_processed is True
    assert outcome.status == "processing"
    assert store.count_responses(prompt_id=prompt.prompt_id) == 0
    assert store.get_entity_by_name("Slow Horses") is None
    job = store.get_job(job_id=job_id)
    assert job is not None
    assert (job.status, job.attempt_count) == ("processing", 2)
    run = store.get_prompt_run(prompt_run_id=job.prompt_run_id)
    assert run is not None and (run.successful_jobs, run.failed_jobs) == (0, 0)


def test_failure_is_dropped_when_job_was_claimed_again(db_path: str, store: SQLiteStore, make_prompt) -> None:
    prompt = make_prompt(store, runs=1, n_models=1)
    (job_id,) = _sweep(store, prompt.prompt_id)
    adapter = _ReclaimDuringGeneration(db_path, job_id, GenerationError("provider down"))
    executor = JobExecutor(store, load_app_config(), registry=FakeRegistry(adapter))

    outcome = executor.process(job_id)

    assert outcome.already_processed is True
    assert outcome.status == "processing"
    job = store.get_job(job_id=job_id)
    assert job is not None and job.status == "processing"
    run = store.get_prompt_run(prompt_run_id=job.prompt_run_id)
    assert run is not None and run.failed_jobs == 0
