from __future__ import annotations

import logging
from dataclasses import dataclass

from trendscope.config.load_config import AppConfig
from trendscope.llm.base import GenerationError, ModelParams, ProviderResponse
from trendscope.llm.registry import AdapterRegistry
from trendscope.runtime.aggregator import finalize_run
from trendscope.storage.sqlite_store import PersistenceError, PromptJobRecord, SQLiteStore
from trendscope.utils.entity_name import normalize_entity


logger = logging.getLogger(__name__)


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


@dataclass(frozen=True)
class ExecutionOutcome:
    success: bool
    job_id: str
    status: str
    entity_id: str | None = None
    entity_name: str | None = None
    error: str | None = None
    already_processed: bool = False


def _error_message(exc: BaseException) -> str:
    msg = str(exc).strip()
    return msg or type(exc).__name__


class JobExecutor:
    """Claim one job, ask its model, record the entity, close the job.

    `process` is safe to call any number of times for the same job id: only the
    caller that wins the atomic claim does any work; everyone else gets the
    stored status back with `already_processed=True`.
    """

    def __init__(self, store: SQLiteStore, cfg: AppConfig, *, registry: AdapterRegistry | None = None) -> None:
        self._store = store
        self._cfg = cfg
        self._registry = registry or AdapterRegistry(cfg)

    def process(self, job_id: str) -> ExecutionOutcome:
        claim = self._store.claim_job(job_id)
        if claim.job is None:
            raise JobNotFoundError(job_id)
        job = claim.job
        if not claim.claimed:
            logger.info(f"job {job_id}: already handled (status={job.status})")
            return ExecutionOutcome(success=True, job_id=job_id, status=job.status, already_processed=True)

        logger.info(f"job {job_id}: claimed (attempt={job.attempt_count})")
        try:
            prompt_id, category, entity_name, response = self._generate(job)
        except Exception as e:
            return self._fail(job, _error_message(e))

        try:
            entity_id = self._store.complete_job_success(
                job_id,
                prompt_id=prompt_id,
                model_id=job.model_id,
                category=category,
                entity_name=entity_name,
                response_text=response.text,
                sources=response.sources,
                generation_type=response.generation_type,
                attempt_count=job.attempt_count,
            )
        except PersistenceError as e:
            logger.error(f"job {job_id}: {e}")
            return self._fail(job, f"persistence: {e}")

        if entity_id is None:
            # Lost the job to a lease reclaim (and maybe a newer claim) while generating; nothing was written.
            current = self._store.get_job(job_id=job_id)
            status = current.status if current is not None else "unknown"
            logger.warning(f"job {job_id}: no longer processing at completion (status={status})")
            return ExecutionOutcome(success=True, job_id=job_id, status=status, already_processed=True)

        finalize_run(self._store, job.prompt_run_id)
        logger.info(f"job {job_id}: succeeded entity={entity_name!r} via {response.generation_type}")
        return ExecutionOutcome(
            success=True,
            job_id=job_id,
            status="succeeded",
            entity_id=entity_id,
            entity_name=entity_name,
        )

    def _generate(self, job: PromptJobRecord) -> tuple[str, str, str, ProviderResponse]:
        run = self._store.get_prompt_run(prompt_run_id=job.prompt_run_id)
        if run is None:
            raise GenerationError(f"Prompt run not found: {job.prompt_run_id}")
        prompt = self._store.get_prompt(prompt_id=run.prompt_id)
        if prompt is None:
            raise GenerationError(f"Prompt not found: {run.prompt_id}")
        model = self._store.get_model(model_id=job.model_id)
        if model is None:
            raise GenerationError(f"Model not found: {job.model_id}")

        adapter = self._registry.get(model.provider)
        params = ModelParams(
            model=model.name,
            system=self._cfg.prompts.entity_system,
            temperature=self._cfg.executor.temperature if model.supports_temperature else None,
            supports_object_output=model.supports_object_output,
        )
        if job.using_web_search:
            response = adapter.respond_with_web_search(prompt.question, params)
        else:
            response = adapter.respond(prompt.question, params)

        entity_name = normalize_entity(response.text)
        if not entity_name:
            raise GenerationError(f"Answer normalized to an empty entity: {response.text[:80]!r}")
        return prompt.prompt_id, prompt.category, entity_name, response

    def _fail(self, job: PromptJobRecord, error: str) -> ExecutionOutcome:
        try:
            recorded = self._store.complete_job_failure(job.job_id, error=error, attempt_count=job.attempt_count)
        except PersistenceError as e:
            # Left in `processing`; the lease reclaim sweep will pick it up.
            logger.error(f"job {job.job_id}: could not record failure ({e}); left for reclaim")
            return ExecutionOutcome(success=False, job_id=job.job_id, status="processing", error=error)

        if recorded:
            finalize_run(self._store, job.prompt_run_id)
            logger.warning(f"job {job.job_id}: failed: {error}")
            return ExecutionOutcome(success=False, job_id=job.job_id, status="failed", error=error)

        current = self._store.get_job(job_id=job.job_id)
        status = current.status if current is not None else "unknown"
        return ExecutionOutcome(success=True, job_id=job.job_id, status=status, already_processed=True)
