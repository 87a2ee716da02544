from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

JOB_STATUSES = ("queued", "processing", "succeeded", "failed", "skipped")
JOB_TERMINAL_STATUSES = frozenset({"succeeded", "failed", "skipped"})

RUN_COUNTER_COLUMNS = {"successful": "successful_jobs", "failed": "failed_jobs"}


class PersistenceError(RuntimeError):
    """A store write failed part-way through a job transition."""


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _opt_bool(value: Any) -> bool | None:
    return None if value is None else bool(value)


def _opt_float(value: Any) -> float | None:
    return None if value is None else float(value)


def default_db_path() -> str:
    return os.getenv("TRENDSCOPE_SQLITE_PATH", "data/trendscope.db")


@dataclass(frozen=True)
class ModelRecord:
    model_id: str
    name: str
    provider: str
    category: str
    supports_object_output: bool
    supports_temperature: bool
    has_web_access: bool
    native_web_search: bool
    reasoning: bool
    open_weights: bool
    knowledge_cutoff: str | None


@dataclass(frozen=True)
class PromptRecord:
    prompt_id: str
    category: str
    question: str
    frequency: str
    runs: int
    use_web_search: bool | None
    active: bool
    is_highlighted: bool
    model_ids: list[str]
    last_run_at: float | None
    last_response_at: float | None
    created_at: float


@dataclass(frozen=True)
class PromptRunRecord:
    prompt_run_id: str
    prompt_id: str
    status: str
    execution_status: str
    batch_key: str
    total_jobs: int
    successful_jobs: int
    failed_jobs: int
    created_at: float
    updated_at: float
    executed_at: float | None


@dataclass(frozen=True)
class PromptJobRecord:
    job_id: str
    prompt_run_id: str
    model_id: str
    run_index: int
    using_web_search: bool
    status: str
    error_message: str | None
    attempt_count: int
    scheduled_for: float | None
    started_at: float | None
    finished_at: float | None
    created_at: float

    @property
    def terminal(self) -> bool:
        return self.status in JOB_TERMINAL_STATUSES


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of an atomic claim.

    `job is None` means the job does not exist. `claimed=False` with a job means
    another executor got there first (or the job is already terminal).
    """

    claimed: bool
    job: PromptJobRecord | None


def _row_to_model(row: sqlite3.Row) -> ModelRecord:
    return ModelRecord(
        model_id=str(row["model_id"]),
        name=str(row["name"]),
        provider=str(row["provider"]),
        category=str(row["category"]),
        supports_object_output=bool(row["supports_object_output"]),
        supports_temperature=bool(row["supports_temperature"]),
        has_web_access=bool(row["has_web_access"]),
        native_web_search=bool(row["native_web_search"]),
        reasoning=bool(row["reasoning"]),
        open_weights=bool(row["open_weights"]),
        knowledge_cutoff=row["knowledge_cutoff"],
    )


def _row_to_prompt(row: sqlite3.Row) -> PromptRecord:
    return PromptRecord(
        prompt_id=str(row["prompt_id"]),
        category=str(row["category"]),
        question=str(row["question"]),
        frequency=str(row["frequency"]),
        runs=int(row["runs"]),
        use_web_search=_opt_bool(row["use_web_search"]),
        active=bool(row["active"]),
        is_highlighted=bool(row["is_highlighted"]),
        model_ids=[str(m) for m in json.loads(str(row["models_json"] or "[]"))],
        last_run_at=_opt_float(row["last_run_at"]),
        last_response_at=_opt_float(row["last_response_at"]),
        created_at=float(row["created_at"]),
    )


def _row_to_run(row: sqlite3.Row) -> PromptRunRecord:
    return PromptRunRecord(
        prompt_run_id=str(row["prompt_run_id"]),
        prompt_id=str(row["prompt_id"]),
        status=str(row["status"]),
        execution_status=str(row["execution_status"]),
        batch_key=str(row["batch_key"]),
        total_jobs=int(row["total_jobs"]),
        successful_jobs=int(row["successful_jobs"]),
        failed_jobs=int(row["failed_jobs"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        executed_at=_opt_float(row["executed_at"]),
    )


def _row_to_job(row: sqlite3.Row) -> PromptJobRecord:
    return PromptJobRecord(
        job_id=str(row["job_id"]),
        prompt_run_id=str(row["prompt_run_id"]),
        model_id=str(row["model_id"]),
        run_index=int(row["run_index"]),
        using_web_search=bool(row["using_web_search"]),
        status=str(row["status"]),
        error_message=row["error_message"],
        attempt_count=int(row["attempt_count"]),
        scheduled_for=_opt_float(row["scheduled_for"]),
        started_at=_opt_float(row["started_at"]),
        finished_at=_opt_float(row["finished_at"]),
        created_at=float(row["created_at"]),
    )


class SQLiteStore:
    """SQLite-backed job store for prompts, runs, jobs, entities and responses.

    Every cross-job coordination point is a single conditional UPDATE or an
    INSERT with an ON CONFLICT clause, so several API processes / dispatcher
    threads may share one database file. Each thread must open its own store.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, which serialises
        concurrent claimers instead of failing them with SQLITE_BUSY on upgrade.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS models (
              model_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              provider TEXT NOT NULL,
              category TEXT NOT NULL,
              open_weights INTEGER NOT NULL DEFAULT 0,
              supports_object_output INTEGER NOT NULL DEFAULT 0,
              supports_temperature INTEGER NOT NULL DEFAULT 0,
              reasoning INTEGER NOT NULL DEFAULT 0,
              has_web_access INTEGER NOT NULL DEFAULT 0,
              native_web_search INTEGER NOT NULL DEFAULT 0,
              knowledge_cutoff TEXT,
              UNIQUE (name, provider)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS prompts (
              prompt_id TEXT PRIMARY KEY,
              category TEXT NOT NULL,
              question TEXT NOT NULL,
              frequency TEXT NOT NULL DEFAULT 'single',
              runs INTEGER NOT NULL DEFAULT 1,
              use_web_search INTEGER DEFAULT 0,
              active INTEGER NOT NULL DEFAULT 1,
              is_highlighted INTEGER NOT NULL DEFAULT 0,
              models_json TEXT NOT NULL,
              last_run_at REAL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS prompt_runs (
              prompt_run_id TEXT PRIMARY KEY,
              prompt_id TEXT NOT NULL,
              status TEXT NOT NULL,
              batch_key TEXT NOT NULL,
              total_jobs INTEGER NOT NULL DEFAULT 0,
              successful_jobs INTEGER NOT NULL DEFAULT 0,
              failed_jobs INTEGER NOT NULL DEFAULT 0,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              UNIQUE (prompt_id, batch_key),
              FOREIGN KEY (prompt_id) REFERENCES prompts(prompt_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS prompt_jobs (
              job_id TEXT PRIMARY KEY,
              prompt_run_id TEXT NOT NULL,
              model_id TEXT NOT NULL,
              run_index INTEGER NOT NULL,
              using_web_search INTEGER NOT NULL DEFAULT 0,
              status TEXT NOT NULL DEFAULT 'queued',
              error_message TEXT,
              attempt_count INTEGER NOT NULL DEFAULT 0,
              scheduled_for REAL,
              started_at REAL,
              finished_at REAL,
              created_at REAL NOT NULL,
              UNIQUE (prompt_run_id, model_id, run_index, using_web_search),
              FOREIGN KEY (prompt_run_id) REFERENCES prompt_runs(prompt_run_id) ON DELETE CASCADE,
              FOREIGN KEY (model_id) REFERENCES models(model_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
              entity_id TEXT PRIMARY KEY,
              name TEXT NOT NULL UNIQUE,
              category TEXT,
              total_mentions INTEGER NOT NULL DEFAULT 0,
              last_mentioned_at REAL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS responses (
              response_id TEXT PRIMARY KEY,
              prompt_id TEXT NOT NULL,
              model_id TEXT NOT NULL,
              entity_id TEXT NOT NULL,
              response_text TEXT,
              web_search_sources_json TEXT,
              created_at REAL NOT NULL,
              FOREIGN KEY (prompt_id) REFERENCES prompts(prompt_id) ON DELETE CASCADE,
              FOREIGN KEY (model_id) REFERENCES models(model_id) ON DELETE CASCADE,
              FOREIGN KEY (entity_id) REFERENCES entities(entity_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_prompt_jobs_status ON prompt_jobs(status, scheduled_for);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_prompt_jobs_run ON prompt_jobs(prompt_run_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_category ON entities(category);")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_responses_prompt_model_time ON responses(prompt_id, model_id, created_at);"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_responses_entity ON responses(entity_id);")

        # Initialize new databases at schema_version=1, then migrate forward.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except Exception:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE;")
        try:
            # Re-read under the write lock: another process may have migrated meanwhile.
            current = self._get_schema_version()
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Separate "fully enqueued" (status) from "fully executed" (execution_status).
        cur.execute("ALTER TABLE prompt_runs ADD COLUMN execution_status TEXT NOT NULL DEFAULT 'pending';")
        cur.execute("ALTER TABLE prompt_runs ADD COLUMN executed_at REAL;")
        cur.execute("ALTER TABLE responses ADD COLUMN generation_type TEXT;")
        # Executor-side stamp; last_run_at stays the scheduler's enqueue stamp.
        cur.execute("ALTER TABLE prompts ADD COLUMN last_response_at REAL;")
        # Lease reclaim scans processing jobs by start time.
        cur.execute("CREATE INDEX IF NOT EXISTS idx_prompt_jobs_status_started ON prompt_jobs(status, started_at);")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_prompt_runs_exec ON prompt_runs(execution_status, created_at);"
        )

    # --- Models
    def upsert_model(
        self,
        *,
        name: str,
        provider: str,
        category: str = "general",
        supports_object_output: bool = False,
        supports_temperature: bool = False,
        has_web_access: bool = False,
        native_web_search: bool = False,
        reasoning: bool = False,
        open_weights: bool = False,
        knowledge_cutoff: str | None = None,
    ) -> ModelRecord:
        """Insert a model, or refresh its capability flags if (name, provider) exists."""
        self._conn.execute(
            """
            INSERT INTO models(
              model_id, name, provider, category, open_weights, supports_object_output,
              supports_temperature, reasoning, has_web_access, native_web_search, knowledge_cutoff
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name, provider) DO UPDATE SET
              category = excluded.category,
              open_weights = excluded.open_weights,
              supports_object_output = excluded.supports_object_output,
              supports_temperature = excluded.supports_temperature,
              reasoning = excluded.reasoning,
              has_web_access = excluded.has_web_access,
              native_web_search = excluded.native_web_search,
              knowledge_cutoff = excluded.knowledge_cutoff;
            """,
            (
                _new_id("model"),
                name,
                provider,
                category,
                int(open_weights),
                int(supports_object_output),
                int(supports_temperature),
                int(reasoning),
                int(has_web_access),
                int(native_web_search),
                knowledge_cutoff,
            ),
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT * FROM models WHERE name = ? AND provider = ? LIMIT 1;",
            (name, provider),
        ).fetchone()
        return _row_to_model(row)

    def get_model(self, *, model_id: str) -> ModelRecord | None:
        row = self._conn.execute("SELECT * FROM models WHERE model_id = ? LIMIT 1;", (model_id,)).fetchone()
        return _row_to_model(row) if row is not None else None

    def get_models(self, model_ids: list[str]) -> list[ModelRecord]:
        """Resolve model ids, preserving input order and silently dropping unknown ids."""
        if not model_ids:
            return []
        rows = self._conn.execute(
            "SELECT * FROM models WHERE model_id IN (%s);" % ",".join(["?"] * len(model_ids)),
            tuple(model_ids),
        ).fetchall()
        by_id = {str(r["model_id"]): _row_to_model(r) for r in rows}
        seen: set[str] = set()
        out: list[ModelRecord] = []
        for mid in model_ids:
            if mid in by_id and mid not in seen:
                seen.add(mid)
                out.append(by_id[mid])
        return out

    def list_models(self) -> list[ModelRecord]:
        rows = self._conn.execute("SELECT * FROM models ORDER BY provider, name;").fetchall()
        return [_row_to_model(r) for r in rows]

    # --- Prompts
    def create_prompt(
        self,
        *,
        category: str,
        question: str,
        model_ids: list[str],
        frequency: str = "single",
        runs: int = 1,
        use_web_search: bool | None = False,
        active: bool = True,
        is_highlighted: bool = False,
    ) -> PromptRecord:
        prompt_id = _new_id("prompt")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO prompts(
              prompt_id, category, question, frequency, runs, use_web_search,
              active, is_highlighted, models_json, created_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                prompt_id,
                category,
                question,
                frequency,
                int(runs),
                None if use_web_search is None else int(use_web_search),
                int(active),
                int(is_highlighted),
                _json_dumps(list(model_ids)),
                created_at,
            ),
        )
        self._conn.commit()
        prompt = self.get_prompt(prompt_id=prompt_id)
        assert prompt is not None
        return prompt

    def get_prompt(self, *, prompt_id: str) -> PromptRecord | None:
        row = self._conn.execute("SELECT * FROM prompts WHERE prompt_id = ? LIMIT 1;", (prompt_id,)).fetchone()
        return _row_to_prompt(row) if row is not None else None

    def list_prompts(self, *, active_only: bool = False, highlighted_only: bool = False) -> list[PromptRecord]:
        where = ["1=1"]
        if active_only:
            where.append("active = 1")
        if highlighted_only:
            where.append("is_highlighted = 1")
        rows = self._conn.execute(
            f"SELECT * FROM prompts WHERE {' AND '.join(where)} ORDER BY created_at ASC, prompt_id ASC;"
        ).fetchall()
        return [_row_to_prompt(r) for r in rows]

    def list_due_prompts(self, *, cutoff: float) -> list[PromptRecord]:
        """Active daily prompts never run, or last run strictly before `cutoff`."""
        rows = self._conn.execute(
            """
            SELECT * FROM prompts
            WHERE active = 1
              AND frequency = 'daily'
              AND (last_run_at IS NULL OR last_run_at < ?)
            ORDER BY created_at ASC, prompt_id ASC;
            """,
            (float(cutoff),),
        ).fetchall()
        return [_row_to_prompt(r) for r in rows]

    def set_prompt_last_run_at(self, prompt_id: str, ts: float) -> None:
        self._conn.execute("UPDATE prompts SET last_run_at = ? WHERE prompt_id = ?;", (float(ts), prompt_id))
        self._conn.commit()

    # --- Prompt runs
    def get_or_create_prompt_run(
        self, *, prompt_id: str, batch_key: str, total_jobs: int
    ) -> tuple[PromptRunRecord, bool]:
        """Return the run for (prompt, batch_key), creating it if absent.

        The boolean is True only for the call that actually inserted the row.
        """
        with self.transaction(mode="IMMEDIATE"):
            ts = _utc_ts()
            cur = self._conn.execute(
                """
                INSERT INTO prompt_runs(
                  prompt_run_id, prompt_id, status, execution_status, batch_key,
                  total_jobs, successful_jobs, failed_jobs, created_at, updated_at
                ) VALUES(?, ?, 'processing', 'pending', ?, ?, 0, 0, ?, ?)
                ON CONFLICT(prompt_id, batch_key) DO NOTHING;
                """,
                (_new_id("prun"), prompt_id, batch_key, int(total_jobs), ts, ts),
            )
            created = cur.rowcount == 1
            row = self._conn.execute(
                "SELECT * FROM prompt_runs WHERE prompt_id = ? AND batch_key = ? LIMIT 1;",
                (prompt_id, batch_key),
            ).fetchone()
        return _row_to_run(row), created

    def get_prompt_run(self, *, prompt_run_id: str) -> PromptRunRecord | None:
        row = self._conn.execute(
            "SELECT * FROM prompt_runs WHERE prompt_run_id = ? LIMIT 1;",
            (prompt_run_id,),
        ).fetchone()
        return _row_to_run(row) if row is not None else None

    def update_prompt_run_status(self, prompt_run_id: str, status: str) -> None:
        self._conn.execute(
            "UPDATE prompt_runs SET status = ?, updated_at = ? WHERE prompt_run_id = ?;",
            (status, _utc_ts(), prompt_run_id),
        )
        self._conn.commit()

    def sync_run_total_jobs(self, prompt_run_id: str) -> int:
        """Set total_jobs to the number of jobs that actually exist for the run."""
        self._conn.execute(
            """
            UPDATE prompt_runs
            SET
              total_jobs = (SELECT COUNT(*) FROM prompt_jobs WHERE prompt_run_id = ?),
              updated_at = ?
            WHERE prompt_run_id = ?;
            """,
            (prompt_run_id, _utc_ts(), prompt_run_id),
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT total_jobs FROM prompt_runs WHERE prompt_run_id = ?;", (prompt_run_id,)
        ).fetchone()
        return int(row["total_jobs"]) if row is not None else 0

    def increment_run_counter(self, prompt_run_id: str, counter: str, *, commit: bool = True) -> bool:
        """Relative +1 on a run counter; refuses to push the sum past total_jobs."""
        column = RUN_COUNTER_COLUMNS.get(counter)
        if column is None:
            raise ValueError(f"Unknown run counter: {counter!r}")
        cur = self._conn.execute(
            f"""
            UPDATE prompt_runs
            SET {column} = {column} + 1, updated_at = ?
            WHERE prompt_run_id = ?
              AND successful_jobs + failed_jobs < total_jobs;
            """,
            (_utc_ts(), prompt_run_id),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def mark_run_executed_if_finished(self, prompt_run_id: str) -> bool:
        """Flip execution_status to 'executed' once every job is accounted for."""
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE prompt_runs
            SET execution_status = 'executed', executed_at = ?, updated_at = ?
            WHERE prompt_run_id = ?
              AND execution_status = 'pending'
              AND total_jobs > 0
              AND successful_jobs + failed_jobs = total_jobs;
            """,
            (ts, ts, prompt_run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def list_pending_run_ids(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT prompt_run_id FROM prompt_runs WHERE execution_status = 'pending' ORDER BY created_at ASC;"
        ).fetchall()
        return [str(r["prompt_run_id"]) for r in rows]

    def count_open_jobs(self, prompt_run_id: str) -> int:
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS n FROM prompt_jobs
            WHERE prompt_run_id = ? AND status IN ('queued', 'processing');
            """,
            (prompt_run_id,),
        ).fetchone()
        return int(row["n"])

    def mark_run_executed(self, prompt_run_id: str) -> bool:
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE prompt_runs
            SET execution_status = 'executed', executed_at = ?, updated_at = ?
            WHERE prompt_run_id = ? AND execution_status = 'pending';
            """,
            (ts, ts, prompt_run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def reopen_run_execution(self, prompt_run_id: str) -> bool:
        """Back to 'pending' after late jobs were added to an already executed run."""
        cur = self._conn.execute(
            """
            UPDATE prompt_runs
            SET execution_status = 'pending', executed_at = NULL, updated_at = ?
            WHERE prompt_run_id = ? AND execution_status = 'executed';
            """,
            (_utc_ts(), prompt_run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def list_runs(
        self, *, prompt_id: str | None = None, batch_key: str | None = None, limit: int = 50
    ) -> list[PromptRunRecord]:
        where = ["1=1"]
        params: list[Any] = []
        if prompt_id:
            where.append("prompt_id = ?")
            params.append(prompt_id)
        if batch_key:
            where.append("batch_key = ?")
            params.append(batch_key)
        rows = self._conn.execute(
            f"""
            SELECT * FROM prompt_runs
            WHERE {' AND '.join(where)}
            ORDER BY created_at DESC, prompt_run_id DESC
            LIMIT ?;
            """,
            (*params, int(limit)),
        ).fetchall()
        return [_row_to_run(r) for r in rows]

    def count_runs_by_execution_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT execution_status, COUNT(*) AS n FROM prompt_runs GROUP BY execution_status ORDER BY execution_status;",
        ).fetchall()
        return {str(r["execution_status"]): int(r["n"]) for r in rows}

    # --- Jobs
    def insert_job_if_absent(
        self,
        *,
        prompt_run_id: str,
        model_id: str,
        run_index: int,
        using_web_search: bool,
        scheduled_for: float | None = None,
    ) -> str | None:
        """Insert a queued job; returns its id, or None if the tuple already exists."""
        job_id = _new_id("job")
        try:
            cur = self._conn.execute(
                """
                INSERT INTO prompt_jobs(
                  job_id, prompt_run_id, model_id, run_index, using_web_search,
                  status, attempt_count, scheduled_for, created_at
                ) VALUES(?, ?, ?, ?, ?, 'queued', 0, ?, ?)
                ON CONFLICT(prompt_run_id, model_id, run_index, using_web_search) DO NOTHING;
                """,
                (
                    job_id,
                    prompt_run_id,
                    model_id,
                    int(run_index),
                    int(bool(using_web_search)),
                    scheduled_for,
                    _utc_ts(),
                ),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise PersistenceError(f"Failed to insert job for run {prompt_run_id}: {e}") from e
        return job_id if cur.rowcount == 1 else None

    def get_job(self, *, job_id: str) -> PromptJobRecord | None:
        row = self._conn.execute("SELECT * FROM prompt_jobs WHERE job_id = ? LIMIT 1;", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def list_jobs_for_run(self, prompt_run_id: str) -> list[PromptJobRecord]:
        rows = self._conn.execute(
            """
            SELECT * FROM prompt_jobs
            WHERE prompt_run_id = ?
            ORDER BY model_id, using_web_search, run_index;
            """,
            (prompt_run_id,),
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def claim_job(self, job_id: str) -> ClaimResult:
        """Atomically move a job from queued to processing.

        The conditional UPDATE is the only gate: at most one caller observes
        rowcount == 1 for a given job, no matter how many race here.
        """
        with self.transaction(mode="IMMEDIATE"):
            updated = self._conn.execute(
                """
                UPDATE prompt_jobs
                SET
                  status = 'processing',
                  started_at = ?,
                  finished_at = NULL,
                  attempt_count = attempt_count + 1
                WHERE job_id = ? AND status = 'queued';
                """,
                (_utc_ts(), job_id),
            )
            row = self._conn.execute("SELECT * FROM prompt_jobs WHERE job_id = ? LIMIT 1;", (job_id,)).fetchone()
        job = _row_to_job(row) if row is not None else None
        return ClaimResult(claimed=updated.rowcount == 1 and job is not None, job=job)

    def _upsert_entity(self, *, name: str, category: str | None, ts: float) -> str:
        # Relative increment in SQL; never read-modify-write in Python.
        self._conn.execute(
            """
            INSERT INTO entities(entity_id, name, category, total_mentions, last_mentioned_at)
            VALUES(?, ?, ?, 1, ?)
            ON CONFLICT(name) DO UPDATE SET
              total_mentions = total_mentions + 1,
              last_mentioned_at = excluded.last_mentioned_at;
            """,
            (_new_id("ent"), name, category, ts),
        )
        row = self._conn.execute("SELECT entity_id FROM entities WHERE name = ? LIMIT 1;", (name,)).fetchone()
        return str(row["entity_id"])

    def upsert_entity(self, *, name: str, category: str | None) -> str:
        with self.transaction(mode="IMMEDIATE"):
            return self._upsert_entity(name=name, category=category, ts=_utc_ts())

    def complete_job_success(
        self,
        job_id: str,
        *,
        prompt_id: str,
        model_id: str,
        category: str | None,
        entity_name: str,
        response_text: str,
        sources: list[str] | None,
        generation_type: str | None = None,
        attempt_count: int | None = None,
    ) -> str | None:
        """Record a successful answer and close the job, all in one transaction.

        Returns the entity id, or None when the job was no longer `processing`
        (e.g. reclaimed after a lease timeout); in that case nothing is written.
        With `attempt_count`, the job must still be held by that claim: a job
        reclaimed and claimed again by another executor is left alone.
        """
        try:
            with self.transaction(mode="IMMEDIATE"):
                ts = _utc_ts()
                cur = self._conn.execute(
                    """
                    UPDATE prompt_jobs
                    SET status = 'succeeded', finished_at = ?, error_message = NULL
                    WHERE job_id = ? AND status = 'processing'
                      AND (? IS NULL OR attempt_count = ?);
                    """,
                    (ts, job_id, attempt_count, attempt_count),
                )
                if cur.rowcount != 1:
                    return None
                run_row = self._conn.execute(
                    "SELECT prompt_run_id FROM prompt_jobs WHERE job_id = ?;", (job_id,)
                ).fetchone()

                entity_id = self._upsert_entity(name=entity_name, category=category, ts=ts)
                self._conn.execute(
                    """
                    INSERT INTO responses(
                      response_id, prompt_id, model_id, entity_id, response_text,
                      web_search_sources_json, generation_type, created_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        _new_id("resp"),
                        prompt_id,
                        model_id,
                        entity_id,
                        response_text,
                        None if sources is None else _json_dumps(list(sources)),
                        generation_type,
                        ts,
                    ),
                )
                self.increment_run_counter(str(run_row["prompt_run_id"]), "successful", commit=False)
                # Not last_run_at: that is the scheduler's enqueue stamp and drives the due check.
                self._conn.execute(
                    "UPDATE prompts SET last_response_at = ? WHERE prompt_id = ?;",
                    (ts, prompt_id),
                )
                return entity_id
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to record success for job {job_id}: {e}") from e

    def complete_job_failure(self, job_id: str, *, error: str, attempt_count: int | None = None) -> bool:
        """Mark a processing job failed and bump only the run's failed counter.

        `attempt_count` ties the write to one claim, as in `complete_job_success`.
        """
        try:
            with self.transaction(mode="IMMEDIATE"):
                cur = self._conn.execute(
                    """
                    UPDATE prompt_jobs
                    SET status = 'failed', error_message = ?, finished_at = ?
                    WHERE job_id = ? AND status = 'processing'
                      AND (? IS NULL OR attempt_count = ?);
                    """,
                    (error, _utc_ts(), job_id, attempt_count, attempt_count),
                )
                if cur.rowcount != 1:
                    return False
                run_row = self._conn.execute(
                    "SELECT prompt_run_id FROM prompt_jobs WHERE job_id = ?;", (job_id,)
                ).fetchone()
                self.increment_run_counter(str(run_row["prompt_run_id"]), "failed", commit=False)
                return True
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to record failure for job {job_id}: {e}") from e

    def reclaim_stale_jobs(self, *, started_before: float, max_attempts: int, reason: str) -> dict[str, int]:
        """Return jobs stuck in `processing` to the queue (or fail them when out of attempts).

        Each transition is conditional on the job still being `processing` with the
        same stale start time, so a job that finishes concurrently is left alone.
        """
        rows = self._conn.execute(
            """
            SELECT job_id, prompt_run_id, attempt_count, started_at FROM prompt_jobs
            WHERE status = 'processing' AND started_at IS NOT NULL AND started_at < ?
            ORDER BY started_at ASC;
            """,
            (float(started_before),),
        ).fetchall()
        requeued = 0
        failed = 0
        for r in rows:
            with self.transaction(mode="IMMEDIATE"):
                if int(r["attempt_count"]) >= int(max_attempts):
                    cur = self._conn.execute(
                        """
                        UPDATE prompt_jobs
                        SET status = 'failed', error_message = ?, finished_at = ?
                        WHERE job_id = ? AND status = 'processing' AND started_at = ?;
                        """,
                        (reason, _utc_ts(), r["job_id"], r["started_at"]),
                    )
                    if cur.rowcount == 1:
                        self.increment_run_counter(str(r["prompt_run_id"]), "failed", commit=False)
                        failed += 1
                else:
                    cur = self._conn.execute(
                        """
                        UPDATE prompt_jobs
                        SET status = 'queued', started_at = NULL, error_message = ?
                        WHERE job_id = ? AND status = 'processing' AND started_at = ?;
                        """,
                        (reason, r["job_id"], r["started_at"]),
                    )
                    requeued += cur.rowcount
        return {"requeued": requeued, "failed": failed}

    def list_queued_job_ids(self, *, prompt_run_id: str | None = None, limit: int = 500) -> list[str]:
        where = ["status = 'queued'"]
        params: list[Any] = []
        if prompt_run_id:
            where.append("prompt_run_id = ?")
            params.append(prompt_run_id)
        rows = self._conn.execute(
            f"""
            SELECT job_id FROM prompt_jobs
            WHERE {' AND '.join(where)}
            ORDER BY scheduled_for ASC, created_at ASC, job_id ASC
            LIMIT ?;
            """,
            (*params, int(limit)),
        ).fetchall()
        return [str(r["job_id"]) for r in rows]

    def list_jobs(
        self,
        *,
        job_id: str | None = None,
        prompt_run_id: str | None = None,
        prompt_id: str | None = None,
        batch_key: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Most recent jobs joined with their prompt and model identity."""
        where = ["1=1"]
        params: list[Any] = []
        if job_id:
            where.append("j.job_id = ?")
            params.append(job_id)
        if prompt_run_id:
            where.append("r.prompt_run_id = ?")
            params.append(prompt_run_id)
        if prompt_id:
            where.append("r.prompt_id = ?")
            params.append(prompt_id)
        if batch_key:
            where.append("r.batch_key = ?")
            params.append(batch_key)
        if status:
            where.append("j.status = ?")
            params.append(status)

        rows = self._conn.execute(
            f"""
            SELECT
              j.job_id, j.prompt_run_id, j.model_id, j.run_index, j.using_web_search, j.status,
              j.error_message, j.attempt_count, j.scheduled_for, j.started_at, j.finished_at, j.created_at,
              r.batch_key,
              p.prompt_id AS p_prompt_id, p.question AS p_question, p.category AS p_category,
              m.name AS m_name, m.provider AS m_provider
            FROM prompt_jobs j
            LEFT JOIN prompt_runs r ON j.prompt_run_id = r.prompt_run_id
            LEFT JOIN prompts p ON r.prompt_id = p.prompt_id
            LEFT JOIN models m ON j.model_id = m.model_id
            WHERE {' AND '.join(where)}
            ORDER BY j.created_at DESC, j.job_id DESC
            LIMIT ?;
            """,
            (*params, int(limit)),
        ).fetchall()

        items: list[dict[str, Any]] = []
        for r in rows:
            items.append(
                {
                    "job": {
                        "id": r["job_id"],
                        "promptRunId": r["prompt_run_id"],
                        "modelId": r["model_id"],
                        "runIndex": int(r["run_index"]),
                        "usingWebSearch": bool(r["using_web_search"]),
                        "status": r["status"],
                        "errorMessage": r["error_message"],
                        "attemptCount": int(r["attempt_count"]),
                        "scheduledFor": _opt_float(r["scheduled_for"]),
                        "startedAt": _opt_float(r["started_at"]),
                        "finishedAt": _opt_float(r["finished_at"]),
                        "createdAt": float(r["created_at"]),
                        "batchKey": r["batch_key"],
                    },
                    "prompt": {
                        "id": r["p_prompt_id"],
                        "question": r["p_question"],
                        "category": r["p_category"],
                    },
                    "model": {
                        "id": r["model_id"] if r["m_name"] is not None else None,
                        "name": r["m_name"],
                        "provider": r["m_provider"],
                    },
                }
            )
        return items

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM prompt_jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Entities / responses
    def get_entity_by_name(self, name: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT entity_id, name, category, total_mentions, last_mentioned_at
            FROM entities WHERE name = ? LIMIT 1;
            """,
            (name,),
        ).fetchone()

    def list_entities(self, *, category: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        where = ["1=1"]
        params: list[Any] = []
        if category:
            where.append("category = ?")
            params.append(category)
        rows = self._conn.execute(
            f"""
            SELECT entity_id, name, category, total_mentions, last_mentioned_at
            FROM entities
            WHERE {' AND '.join(where)}
            ORDER BY total_mentions DESC, name ASC
            LIMIT ?;
            """,
            (*params, int(limit)),
        ).fetchall()
        return [
            {
                "entity_id": r["entity_id"],
                "name": r["name"],
                "category": r["category"],
                "total_mentions": int(r["total_mentions"]),
                "last_mentioned_at": _opt_float(r["last_mentioned_at"]),
            }
            for r in rows
        ]

    def count_responses(self, *, prompt_id: str | None = None) -> int:
        if prompt_id:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM responses WHERE prompt_id = ?;", (prompt_id,)
            ).fetchone()
        else:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM responses;").fetchone()
        return int(row["n"])

    def list_responses(
        self, *, prompt_id: str, start_ts: float, end_ts: float, limit: int = 500
    ) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT
              resp.response_id, resp.response_text, resp.web_search_sources_json,
              resp.generation_type, resp.created_at,
              m.name AS model_name, e.name AS entity_name
            FROM responses resp
            LEFT JOIN models m ON resp.model_id = m.model_id
            LEFT JOIN entities e ON resp.entity_id = e.entity_id
            WHERE resp.prompt_id = ? AND resp.created_at >= ? AND resp.created_at < ?
            ORDER BY resp.created_at ASC, resp.response_id ASC
            LIMIT ?;
            """,
            (prompt_id, float(start_ts), float(end_ts), int(limit)),
        ).fetchall()
        return [
            {
                "response_id": r["response_id"],
                "response_text": r["response_text"],
                "web_search_sources": (
                    json.loads(r["web_search_sources_json"]) if r["web_search_sources_json"] is not None else None
                ),
                "generation_type": r["generation_type"],
                "created_at": float(r["created_at"]),
                "model": r["model_name"],
                "entity": r["entity_name"],
            }
            for r in rows
        ]

    def count_mentions_by_entity_and_model(
        self, *, prompt_id: str, start_ts: float, end_ts: float
    ) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT e.name AS entity, m.name AS model, COUNT(resp.response_id) AS n
            FROM responses resp
            LEFT JOIN models m ON resp.model_id = m.model_id
            LEFT JOIN entities e ON resp.entity_id = e.entity_id
            WHERE resp.prompt_id = ? AND resp.created_at >= ? AND resp.created_at < ?
            GROUP BY e.name, m.name
            ORDER BY e.name, m.name;
            """,
            (prompt_id, float(start_ts), float(end_ts)),
        ).fetchall()
