from __future__ import annotations

import dataclasses
import json
import threading
import time
from typing import Any

import httpx
import pytest

from trendscope.config.load_config import DispatchConfig, load_app_config
from trendscope.runtime.dispatcher import DeliveryError, HttpTransport, InlineTransport, JobDispatcher
from trendscope.runtime.scheduler import run_sweep
from trendscope.storage.sqlite_store import SQLiteStore


def _dispatch_cfg(**overrides: Any) -> DispatchConfig:
    base = DispatchConfig(
        mode="inline",
        base_url="http://testserver",
        max_attempts=3,
        backoff_s=0.0,
        workers=2,
        timeout_s=1.0,
    )
    return dataclasses.replace(base, **overrides)


class FlakyTransport:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls: list[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def deliver(self, job_id: str) -> dict[str, Any]:
        with self._lock:
            self.calls.append(job_id)
            attempt = self.calls.count(job_id)
        if attempt <= self.failures:
            raise DeliveryError(f"attempt {attempt} refused")
        return {"success": True, "jobId": job_id, "status": "succeeded"}

    def close(self) -> None:
        self.closed = True


def test_retries_until_delivered() -> None:
    transport = FlakyTransport(failures=2)
    dispatcher = JobDispatcher(_dispatch_cfg(), transport)
    dispatcher.start()
    try:
        assert dispatcher.submit(["job_a", "job_b"]) == 2
        dispatcher.join()
        snap = dispatcher.status_snapshot()
    finally:
        dispatcher.stop()

    assert snap["submitted"] == 2
    assert snap["delivered"] == 2
    assert snap["retried"] == 4
    assert snap["dropped"] == 0
    assert snap["pending"] == 0
    assert transport.calls.count("job_a") == 3
    assert transport.closed is True
    assert dispatcher.running is False


def test_drops_after_max_attempts() -> None:
    transport = FlakyTransport(failures=10)
    dispatcher = JobDispatcher(_dispatch_cfg(max_attempts=2, workers=1), transport)
    dispatcher.start()
    try:
        dispatcher.submit(["job_a"])
        dispatcher.join()
        snap = dispatcher.status_snapshot()
    finally:
        dispatcher.stop()

    assert snap["delivered"] == 0
    assert snap["dropped"] == 1
    assert transport.calls == ["job_a", "job_a"]


class _OneSlowRetryTransport(FlakyTransport):
    """Refuses `job_a` once; everything else is delivered on the first try."""

    def __init__(self) -> None:
        super().__init__(failures=1)
        self.first_refusal = threading.Event()
        self.others_delivered = threading.Event()

    def deliver(self, job_id: str) -> dict[str, Any]:
        if job_id != "job_a":
            with self._lock:
                self.calls.append(job_id)
            self.others_delivered.set()
            return {"success": True, "jobId": job_id, "status": "succeeded"}
        try:
            return super().deliver(job_id)
        finally:
            self.first_refusal.set()


def test_backoff_does_not_hold_a_worker() -> None:
    transport = _OneSlowRetryTransport()
    dispatcher = JobDispatcher(_dispatch_cfg(workers=1, backoff_s=0.5), transport)
    dispatcher.start()
    try:
        dispatcher.submit(["job_a"])
        assert transport.first_refusal.wait(2.0)
        dispatcher.submit(["job_b"])
        # The single worker is free while job_a waits out its 0.5s backoff.
        assert transport.others_delivered.wait(0.3)
        waiting = dispatcher.status_snapshot()
        assert dispatcher.join(timeout_s=5.0) is True
        snap = dispatcher.status_snapshot()
    finally:
        dispatcher.stop()

    assert waiting["delayed"] == 1
    assert transport.calls == ["job_a", "job_b", "job_a"]
    assert (snap["delivered"], snap["retried"], snap["dropped"], snap["delayed"]) == (2, 1, 0, 0)


def test_stop_abandons_delayed_retries() -> None:
    transport = FlakyTransport(failures=1)
    dispatcher = JobDispatcher(_dispatch_cfg(workers=1, backoff_s=30.0), transport)
    dispatcher.start()
    dispatcher.submit(["job_a"])
    deadline = time.time() + 2.0
    while dispatcher.status_snapshot()["delayed"] == 0 and time.time() < deadline:
        time.sleep(0.01)
    assert dispatcher.status_snapshot()["delayed"] == 1

    dispatcher.stop()

    assert dispatcher.join(timeout_s=1.0) is True
    assert dispatcher.status_snapshot()["delayed"] == 0
    assert transport.calls == ["job_a"]
    assert transport.closed is True


def test_from_config_off_mode() -> None:
    cfg = load_app_config()
    off = dataclasses.replace(cfg, dispatch=dataclasses.replace(cfg.dispatch, mode="off"))
    assert JobDispatcher.from_config(off) is None


def test_inline_dispatch_runs_a_dry_sweep(db_path: str, make_prompt) -> None:
    cfg = load_app_config()
    cfg = dataclasses.replace(
        cfg,
        executor=dataclasses.replace(cfg.executor, dry_run=True),
        dispatch=dataclasses.replace(cfg.dispatch, mode="inline", backoff_s=0.0, workers=2),
    )
    store = SQLiteStore(db_path)
    try:
        prompt = make_prompt(store, runs=2, use_web_search=None, n_models=2)
        dispatcher = JobDispatcher.from_config(cfg, db_path=db_path)
        assert dispatcher is not None
        dispatcher.start()
        try:
            summary = run_sweep(store, cfg, dispatcher=dispatcher)
            dispatcher.join()
            snap = dispatcher.status_snapshot()
        finally:
            dispatcher.stop()

        assert summary.jobs_created == 8
        assert snap["delivered"] == 8
        run = store.list_runs(prompt_id=prompt.prompt_id)[0]
        assert (run.successful_jobs, run.failed_jobs) == (8, 0)
        assert run.execution_status == "executed"
        names = {e["name"] for e in store.list_entities()}
        assert names <= {"Dry Run Alpha", "Dry Run Beta", "Dry Run Gamma"}
    finally:
        store.close()


def test_inline_unknown_job_is_a_delivery_error(db_path: str) -> None:
    cfg = load_app_config()
    cfg = dataclasses.replace(cfg, executor=dataclasses.replace(cfg.executor, dry_run=True))
    transport = InlineTransport(cfg, db_path=db_path)
    with pytest.raises(DeliveryError):
        transport.deliver("job_missing")


def _http_transport(handler) -> HttpTransport:
    transport = HttpTransport(_dispatch_cfg(mode="http"), secret="s3cret")
    transport._client.close()
    transport._client = httpx.Client(
        transport=httpx.MockTransport(handler), headers={"Authorization": "s3cret"}
    )
    return transport


def test_http_transport_posts_job_id() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "jobId": "job_a", "status": "succeeded"})

    transport = _http_transport(handler)
    try:
        body = transport.deliver("job_a")
    finally:
        transport.close()

    assert body["status"] == "succeeded"
    assert str(seen[0].url) == "http://testserver/api/v1/jobs/process"
    assert seen[0].headers["Authorization"] == "s3cret"
    assert json.loads(seen[0].content) == {"jobId": "job_a"}


def test_http_transport_failed_job_counts_as_delivered() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"success": False, "jobId": "job_a", "status": "failed", "error": "x"})

    transport = _http_transport(handler)
    try:
        assert transport.deliver("job_a")["status"] == "failed"
    finally:
        transport.close()


def test_http_transport_rejections_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": "unauthorized"}})

    transport = _http_transport(handler)
    try:
        with pytest.raises(DeliveryError):
            transport.deliver("job_a")
    finally:
        transport.close()
