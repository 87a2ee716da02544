from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


_DUE_POLICIES = {"utc_day", "rolling_24h"}
_DISPATCH_MODES = {"http", "inline", "off"}


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _require_choice(value: Any, *, key: str, choices: set[str]) -> str:
    s = _as_str(value, key=key).strip().lower()
    if s not in choices:
        raise ConfigError(f"Invalid {key}: must be one of {sorted(choices)}, got {s!r}")
    return s


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclass(frozen=True)
class LimitsConfig:
    max_runs: int
    status_query_limit: int


@dataclass(frozen=True)
class SchedulerConfig:
    due_policy: str
    rolling_window_hours: int


@dataclass(frozen=True)
class ExecutorConfig:
    temperature: float
    lease_timeout_s: float
    max_attempts: int
    dry_run: bool


@dataclass(frozen=True)
class DispatchConfig:
    mode: str
    base_url: str
    max_attempts: int
    backoff_s: float
    workers: int
    timeout_s: float


@dataclass(frozen=True)
class ProviderConfig:
    api_key_env: str
    base_url: str | None = None

    def api_key(self) -> str | None:
        return os.getenv(self.api_key_env) or None


@dataclass(frozen=True)
class ProvidersConfig:
    """Provider name -> credentials/endpoint settings."""

    by_name: dict[str, ProviderConfig]

    def get(self, name: str) -> ProviderConfig | None:
        return self.by_name.get((name or "").strip().lower())


@dataclass(frozen=True)
class PromptConfig:
    entity_system: str


@dataclass(frozen=True)
class AppConfig:
    limits: LimitsConfig
    scheduler: SchedulerConfig
    executor: ExecutorConfig
    dispatch: DispatchConfig
    providers: ProvidersConfig
    prompts: PromptConfig


def default_config_path() -> Path:
    return Path(os.getenv("TRENDSCOPE_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def cron_secret() -> str:
    """Shared secret gating privileged endpoints (empty means "not configured")."""
    return os.getenv("TRENDSCOPE_CRON_SECRET", "").strip()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))

    limits = raw.get("limits", {})
    scheduler = raw.get("scheduler", {})
    executor = raw.get("executor", {})
    dispatch = raw.get("dispatch", {})
    providers = raw.get("providers", {})
    prompts = raw.get("prompts", {})

    max_runs = _as_int(limits.get("max_runs"), key="limits.max_runs")
    if max_runs < 1:
        raise ConfigError(f"Invalid limits.max_runs: must be >= 1, got {max_runs}")

    by_name: dict[str, ProviderConfig] = {}
    for name, section in providers.items():
        if not isinstance(section, dict):
            raise ConfigError(f"Invalid providers.{name}: expected a table")
        base_url = section.get("base_url")
        by_name[str(name).strip().lower()] = ProviderConfig(
            api_key_env=_as_str(section.get("api_key_env"), key=f"providers.{name}.api_key_env"),
            base_url=str(base_url) if base_url else None,
        )

    # Env overrides are applied last so deployments can flip modes without editing the file.
    dispatch_mode = os.getenv("TRENDSCOPE_DISPATCH_MODE") or dispatch.get("mode")
    base_url = os.getenv("TRENDSCOPE_APP_URL") or dispatch.get("base_url")
    dry_run = _as_bool(executor.get("dry_run", False), key="executor.dry_run")
    dry_run = env_bool("TRENDSCOPE_DRY_RUN", dry_run)

    return AppConfig(
        limits=LimitsConfig(
            max_runs=max_runs,
            status_query_limit=_as_int(limits.get("status_query_limit"), key="limits.status_query_limit"),
        ),
        scheduler=SchedulerConfig(
            due_policy=_require_choice(
                scheduler.get("due_policy"), key="scheduler.due_policy", choices=_DUE_POLICIES
            ),
            rolling_window_hours=_as_int(
                scheduler.get("rolling_window_hours"), key="scheduler.rolling_window_hours"
            ),
        ),
        executor=ExecutorConfig(
            temperature=_as_float(executor.get("temperature"), key="executor.temperature"),
            lease_timeout_s=_as_float(executor.get("lease_timeout_s"), key="executor.lease_timeout_s"),
            max_attempts=_as_int(executor.get("max_attempts"), key="executor.max_attempts"),
            dry_run=dry_run,
        ),
        dispatch=DispatchConfig(
            mode=_require_choice(dispatch_mode, key="dispatch.mode", choices=_DISPATCH_MODES),
            base_url=_as_str(base_url, key="dispatch.base_url").rstrip("/"),
            max_attempts=_as_int(dispatch.get("max_attempts"), key="dispatch.max_attempts"),
            backoff_s=_as_float(dispatch.get("backoff_s"), key="dispatch.backoff_s"),
            workers=_as_int(dispatch.get("workers"), key="dispatch.workers"),
            timeout_s=_as_float(dispatch.get("timeout_s"), key="dispatch.timeout_s"),
        ),
        providers=ProvidersConfig(by_name=by_name),
        prompts=PromptConfig(
            entity_system=_as_str(prompts.get("entity_system"), key="prompts.entity_system"),
        ),
    )
