from __future__ import annotations

import hmac
import threading

from fastapi import Header, Request

from trendscope.api.errors import APIError
from trendscope.config.load_config import ConfigError, cron_secret, load_app_config
from trendscope.llm.registry import AdapterRegistry


def _presented_secret(authorization: str | None) -> str:
    raw = (authorization or "").strip()
    if raw[:7].lower() == "bearer ":
        return raw[7:].strip()
    return raw


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """FastAPI dependency gating privileged endpoints on the shared secret.

    Accepts the bare secret or `Bearer <secret>` in the `Authorization` header.
    Runs before the handler body, so a rejected request never touches the store.
    An unset secret rejects everything.
    """
    expected = cron_secret()
    presented = _presented_secret(authorization)
    if not expected or not presented or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        raise APIError(status_code=401, code="unauthorized", message="Unauthorized.")


_REGISTRY_INIT_LOCK = threading.Lock()


def get_adapter_registry(request: Request) -> AdapterRegistry:
    """FastAPI dependency: one AdapterRegistry per app, so provider SDK clients are reused.

    Cached in `app.state` for the lifetime of the process (lazy init).
    """
    cached = getattr(request.app.state, "adapter_registry", None)
    if cached is not None:
        return cached

    with _REGISTRY_INIT_LOCK:
        cached2 = getattr(request.app.state, "adapter_registry", None)
        if cached2 is not None:
            return cached2
        try:
            cfg = load_app_config()
        except ConfigError as e:
            raise APIError(status_code=500, code="config_error", message=str(e)) from e
        registry = AdapterRegistry(cfg)
        request.app.state.adapter_registry = registry
        return registry
