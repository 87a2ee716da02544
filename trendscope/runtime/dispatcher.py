from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from trendscope.config.load_config import AppConfig, DispatchConfig, cron_secret
from trendscope.llm.registry import AdapterRegistry
from trendscope.runtime.executor import JobExecutor, JobNotFoundError
from trendscope.storage.sqlite_store import SQLiteStore, default_db_path


logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    pass


class Transport(Protocol):
    def deliver(self, job_id: str) -> dict[str, Any]: ...

    def close(self) -> None: ...


class HttpTransport:
    """POST each job id to the trigger endpoint of a running API instance."""

    def __init__(self, cfg: DispatchConfig, *, secret: str | None = None) -> None:
        import httpx

        self._url = f"{cfg.base_url}/api/v1/jobs/process"
        headers = {"Content-Type": "application/json"}
        token = cron_secret() if secret is None else secret
        if token:
            headers["Authorization"] = token
        self._client = httpx.Client(timeout=float(cfg.timeout_s), headers=headers)

    def deliver(self, job_id: str) -> dict[str, Any]:
        import httpx

        try:
            resp = self._client.post(self._url, json={"jobId": job_id})
        except httpx.HTTPError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e
        # A 500 with a JSON body is a delivered job that failed to generate: not a delivery failure.
        if resp.status_code == 500:
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and "jobId" in body:
                return body
        if resp.status_code >= 400:
            raise DeliveryError(f"HTTP {resp.status_code} from trigger endpoint: {resp.text[:200]}")
        return resp.json()

    def close(self) -> None:
        self._client.close()


class InlineTransport:
    """Execute the job in the calling dispatcher thread."""

    def __init__(
        self, cfg: AppConfig, *, db_path: str | None = None, registry: AdapterRegistry | None = None
    ) -> None:
        self._cfg = cfg
        self._db_path = db_path or default_db_path()
        self._registry = registry or AdapterRegistry(cfg)

    def deliver(self, job_id: str) -> dict[str, Any]:
        store = SQLiteStore(self._db_path)
        try:
            outcome = JobExecutor(store, self._cfg, registry=self._registry).process(job_id)
        except JobNotFoundError as e:
            raise DeliveryError(str(e)) from e
        finally:
            store.close()
        return {"success": outcome.success, "jobId": outcome.job_id, "status": outcome.status}

    def close(self) -> None:
        return None


@dataclass(eq=False)
class _Task:
    job_id: str
    attempt: int = 0


_STOP = object()


class JobDispatcher:
    """In-process delivery channel for job ids.

    Each job id is an independent task: failed deliveries are retried with
    linear backoff up to `max_attempts`, then logged and dropped. A dropped job
    stays `queued` in the store and can be re-dispatched by a replay.

    A task waiting out its backoff sits on a timer, not on a worker thread, so
    other job ids keep flowing while it waits.
    """

    def __init__(self, cfg: DispatchConfig, transport: Transport) -> None:
        self._cfg = cfg
        self._transport = transport
        self._queue: queue.Queue[Any] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._outstanding = 0
        self._delayed: dict[_Task, threading.Timer] = {}
        self._stats = {"submitted": 0, "delivered": 0, "retried": 0, "dropped": 0}

    @classmethod
    def from_config(cls, cfg: AppConfig, *, db_path: str | None = None) -> "JobDispatcher | None":
        if cfg.dispatch.mode == "off":
            return None
        if cfg.dispatch.mode == "inline":
            return cls(cfg.dispatch, InlineTransport(cfg, db_path=db_path))
        return cls(cfg.dispatch, HttpTransport(cfg.dispatch))

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            delayed = len(self._delayed)
        return {
            "running": self.running,
            "mode": self._cfg.mode,
            "workers": len(self._threads),
            "pending": self._queue.qsize(),
            "delayed": delayed,
            "max_attempts": int(self._cfg.max_attempts),
            **stats,
        }

    def start(self) -> None:
        if self.running:
            return
        self._threads = [
            threading.Thread(target=self._run_loop, name=f"trendscope-dispatch-{i}", daemon=True)
            for i in range(max(1, int(self._cfg.workers)))
        ]
        for t in self._threads:
            t.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        with self._lock:
            abandoned = list(self._delayed.items())
            self._delayed.clear()
        for task, timer in abandoned:
            timer.cancel()
            logger.warning(f"dispatch {task.job_id}: retry abandoned on shutdown; job stays queued")
            self._settle(None)
        for _ in self._threads:
            self._queue.put(_STOP)
        for t in self._threads:
            t.join(timeout=timeout_s)
        self._threads = []
        self._transport.close()

    def submit(self, job_ids: list[str]) -> int:
        with self._lock:
            self._outstanding += len(job_ids)
            self._stats["submitted"] += len(job_ids)
        for job_id in job_ids:
            self._queue.put(_Task(job_id=str(job_id)))
        return len(job_ids)

    def join(self, timeout_s: float | None = None) -> bool:
        """Block until every submitted task has been delivered or dropped.

        Returns False if `timeout_s` ran out first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout=timeout_s)

    def _settle(self, key: str | None) -> None:
        with self._lock:
            if key is not None:
                self._stats[key] += 1
            self._outstanding -= 1
            if self._outstanding <= 0:
                self._idle.notify_all()

    def _run_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._handle(item)
            except Exception as e:
                logger.exception(f"dispatch {item.job_id}: unexpected error: {e}")
                self._settle("dropped")

    def _release(self, task: _Task) -> None:
        with self._lock:
            if self._delayed.pop(task, None) is None:
                return
        self._queue.put(task)

    def _retry_later(self, task: _Task, backoff: float) -> None:
        with self._lock:
            self._stats["retried"] += 1
        if backoff <= 0:
            self._queue.put(task)
            return
        timer = threading.Timer(backoff, self._release, args=(task,))
        timer.daemon = True
        with self._lock:
            self._delayed[task] = timer
        timer.start()

    def _handle(self, task: _Task) -> None:
        task.attempt += 1
        try:
            result = self._transport.deliver(task.job_id)
        except Exception as e:
            if task.attempt >= int(self._cfg.max_attempts):
                logger.error(
                    f"dispatch {task.job_id}: giving up after {task.attempt} attempt(s): {e}; job stays queued"
                )
                self._settle("dropped")
                return
            backoff = float(self._cfg.backoff_s) * task.attempt
            logger.warning(f"dispatch {task.job_id}: attempt {task.attempt} failed: {e}; retry in {backoff:.1f}s")
            self._retry_later(task, backoff)
            return

        self._settle("delivered")
        logger.debug(f"dispatch {task.job_id}: delivered status={result.get('status')}")
