"""Registry — SQLite persistence for pipelines, jobs, events, builds, triggers and users.

Every update writes the whole row: concurrent updates of the same entity are
last-write-wins. Nothing here serializes requests.

Key exports:
    Registry — CRUD for all Conductor entities.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Iterable

import aiosqlite

from conductor.models import (
    ACTIVE_STATUSES,
    Build,
    BuildStatus,
    Event,
    EventType,
    Job,
    Pipeline,
    TriggerLocator,
    TriggerRecord,
    User,
)
from conductor.workflow import WorkflowGraph

logger = logging.getLogger(__name__)


class Registry:
    """SQLite-backed registry with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized — call initialize() first")
        return self._db

    # ── Pipelines ────────────────────────────────────────────────────────

    async def create_pipeline(self, pipeline: Pipeline) -> Pipeline:
        cursor = await self.db.execute(
            """
            INSERT INTO pipelines (
                id, scm_uri, scm_context, token, annotations, workflow_graph,
                created_at, last_sync_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pipeline.id,
                pipeline.scm_uri,
                pipeline.scm_context,
                pipeline.token,
                json.dumps(pipeline.annotations),
                pipeline.workflow_graph.model_dump_json(),
                _dt_to_str(pipeline.created_at),
                _dt_to_str(pipeline.last_sync_at),
            ),
        )
        await self.db.commit()
        pipeline.id = pipeline.id or cursor.lastrowid
        return pipeline

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        cursor = await self.db.execute("SELECT * FROM pipelines WHERE id = ?", (pipeline_id,))
        row = await cursor.fetchone()
        return _row_to_pipeline(row) if row else None

    async def get_pipeline_by_scm_uri(self, scm_uri: str) -> Pipeline | None:
        cursor = await self.db.execute("SELECT * FROM pipelines WHERE scm_uri = ?", (scm_uri,))
        row = await cursor.fetchone()
        return _row_to_pipeline(row) if row else None

    async def list_pipelines_by_scm_uris(self, scm_uris: Iterable[str]) -> list[Pipeline]:
        uris = list(scm_uris)
        if not uris:
            return []
        placeholders = ", ".join("?" for _ in uris)
        cursor = await self.db.execute(
            f"SELECT * FROM pipelines WHERE scm_uri IN ({placeholders}) ORDER BY id",
            uris,
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline(r) for r in rows]

    async def update_pipeline(self, pipeline: Pipeline) -> Pipeline:
        await self.db.execute(
            """
            UPDATE pipelines SET
                scm_context = ?, token = ?, annotations = ?, workflow_graph = ?,
                last_sync_at = ?
            WHERE id = ?
            """,
            (
                pipeline.scm_context,
                pipeline.token,
                json.dumps(pipeline.annotations),
                pipeline.workflow_graph.model_dump_json(),
                _dt_to_str(pipeline.last_sync_at),
                pipeline.id,
            ),
        )
        await self.db.commit()
        return pipeline

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def create_job(self, job: Job) -> Job:
        cursor = await self.db.execute(
            "INSERT INTO jobs (id, pipeline_id, name, archived, permutations) VALUES (?, ?, ?, ?, ?)",
            (
                job.id,
                job.pipeline_id,
                job.name,
                1 if job.archived else 0,
                json.dumps(job.permutations),
            ),
        )
        await self.db.commit()
        job.id = job.id or cursor.lastrowid
        return job

    async def get_job(self, job_id: int) -> Job | None:
        cursor = await self.db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def get_job_by_name(self, pipeline_id: int, name: str) -> Job | None:
        cursor = await self.db.execute(
            "SELECT * FROM jobs WHERE pipeline_id = ? AND name = ?", (pipeline_id, name)
        )
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def list_jobs(self, pipeline_id: int, *, archived: bool | None = None) -> list[Job]:
        if archived is None:
            cursor = await self.db.execute(
                "SELECT * FROM jobs WHERE pipeline_id = ? ORDER BY id", (pipeline_id,)
            )
        else:
            cursor = await self.db.execute(
                "SELECT * FROM jobs WHERE pipeline_id = ? AND archived = ? ORDER BY id",
                (pipeline_id, 1 if archived else 0),
            )
        rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    async def update_job(self, job: Job) -> Job:
        await self.db.execute(
            "UPDATE jobs SET archived = ?, permutations = ? WHERE id = ?",
            (1 if job.archived else 0, json.dumps(job.permutations), job.id),
        )
        await self.db.commit()
        return job

    # ── Events ───────────────────────────────────────────────────────────

    async def create_event(self, event: Event) -> Event:
        cursor = await self.db.execute(
            """
            INSERT INTO events (
                id, pipeline_id, type, sha, config_pipeline_sha, start_from, cause_message,
                meta, changed_files, username, scm_context, commit_branch,
                pr_ref, pr_num, pr_info, parent_build_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.pipeline_id,
                event.type.value,
                event.sha,
                event.config_pipeline_sha,
                event.start_from,
                event.cause_message,
                json.dumps(event.meta),
                json.dumps(event.changed_files),
                event.username,
                event.scm_context,
                event.commit_branch,
                event.pr_ref,
                event.pr_num,
                json.dumps(event.pr_info) if event.pr_info is not None else None,
                event.parent_build_id,
                _dt_to_str(event.created_at),
            ),
        )
        await self.db.commit()
        event.id = event.id or cursor.lastrowid
        return event

    async def get_event(self, event_id: int) -> Event | None:
        cursor = await self.db.execute("SELECT * FROM events WHERE id = ?", (event_id,))
        row = await cursor.fetchone()
        return _row_to_event(row) if row else None

    async def list_events(self, pipeline_id: int) -> list[Event]:
        cursor = await self.db.execute(
            "SELECT * FROM events WHERE pipeline_id = ? ORDER BY id", (pipeline_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_event(r) for r in rows]

    async def update_event(self, event: Event) -> Event:
        """Only ``meta`` changes after creation."""
        await self.db.execute(
            "UPDATE events SET meta = ? WHERE id = ?",
            (json.dumps(event.meta), event.id),
        )
        await self.db.commit()
        return event

    # ── Builds ───────────────────────────────────────────────────────────

    async def create_build(self, build: Build) -> Build:
        cursor = await self.db.execute(
            """
            INSERT INTO builds (
                id, job_id, event_id, status, status_message, sha, meta, stats,
                parent_build_id, created_at, start_time, end_time
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                build.id,
                build.job_id,
                build.event_id,
                build.status.value,
                build.status_message,
                build.sha,
                json.dumps(build.meta),
                json.dumps(build.stats),
                build.parent_build_id,
                _dt_to_str(build.created_at),
                _dt_to_str(build.start_time),
                _dt_to_str(build.end_time),
            ),
        )
        await self.db.commit()
        build.id = build.id or cursor.lastrowid
        return build

    async def get_build(self, build_id: int) -> Build | None:
        cursor = await self.db.execute("SELECT * FROM builds WHERE id = ?", (build_id,))
        row = await cursor.fetchone()
        return _row_to_build(row) if row else None

    async def list_builds_for_event(self, event_id: int) -> list[Build]:
        cursor = await self.db.execute(
            "SELECT * FROM builds WHERE event_id = ? ORDER BY id", (event_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_build(r) for r in rows]

    async def get_running_builds(self, job_id: int) -> list[Build]:
        """Builds of a job that have not finished yet."""
        statuses = sorted(s.value for s in ACTIVE_STATUSES)
        placeholders = ", ".join("?" for _ in statuses)
        cursor = await self.db.execute(
            f"SELECT * FROM builds WHERE job_id = ? AND status IN ({placeholders}) ORDER BY id",
            (job_id, *statuses),
        )
        rows = await cursor.fetchall()
        return [_row_to_build(r) for r in rows]

    async def update_build(self, build: Build) -> Build:
        await self.db.execute(
            """
            UPDATE builds SET
                status = ?, status_message = ?, meta = ?, stats = ?,
                start_time = ?, end_time = ?
            WHERE id = ?
            """,
            (
                build.status.value,
                build.status_message,
                json.dumps(build.meta),
                json.dumps(build.stats),
                _dt_to_str(build.start_time),
                _dt_to_str(build.end_time),
                build.id,
            ),
        )
        await self.db.commit()
        return build

    # ── Trigger Records ──────────────────────────────────────────────────

    async def create_trigger(self, record: TriggerRecord) -> TriggerRecord:
        """Persist a trigger edge. ``dest`` must be a valid trigger locator."""
        dest = TriggerLocator.parse(record.dest)
        await self.db.execute(
            "INSERT OR IGNORE INTO triggers (src, dest, dest_pipeline_id) VALUES (?, ?, ?)",
            (record.src, dest.format(), dest.pipeline_id),
        )
        await self.db.commit()
        return record

    async def list_triggers(self, src: str) -> list[TriggerRecord]:
        cursor = await self.db.execute(
            "SELECT * FROM triggers WHERE src = ? ORDER BY id", (src,)
        )
        rows = await cursor.fetchall()
        return [TriggerRecord(id=r["id"], src=r["src"], dest=r["dest"]) for r in rows]

    async def replace_triggers_for_pipeline(
        self, pipeline_id: int, records: list[TriggerRecord]
    ) -> None:
        """Replace every trigger whose destination is ``pipeline_id``."""
        locators = [TriggerLocator.parse(r.dest) for r in records]
        for locator in locators:
            if locator.pipeline_id != pipeline_id:
                raise ValueError(
                    f"Trigger destination {locator} does not belong to pipeline {pipeline_id}"
                )
        await self.db.execute("DELETE FROM triggers WHERE dest_pipeline_id = ?", (pipeline_id,))
        for record, locator in zip(records, locators):
            await self.db.execute(
                "INSERT OR IGNORE INTO triggers (src, dest, dest_pipeline_id) VALUES (?, ?, ?)",
                (record.src, locator.format(), pipeline_id),
            )
        await self.db.commit()

    # ── Users ────────────────────────────────────────────────────────────

    async def create_user(self, user: User) -> User:
        await self.db.execute(
            """
            INSERT INTO users (username, scm_context, token) VALUES (?, ?, ?)
            ON CONFLICT(username, scm_context) DO UPDATE SET token = excluded.token
            """,
            (user.username, user.scm_context, user.token),
        )
        await self.db.commit()
        stored = await self.get_user(user.username, user.scm_context)
        return stored or user

    async def get_user(self, username: str, scm_context: str) -> User | None:
        cursor = await self.db.execute(
            "SELECT * FROM users WHERE username = ? AND scm_context = ?",
            (username, scm_context),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return User(
            id=row["id"],
            username=row["username"],
            scm_context=row["scm_context"],
            token=row["token"],
        )


# ── SQL Schema ───────────────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS pipelines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scm_uri TEXT NOT NULL UNIQUE,
    scm_context TEXT NOT NULL DEFAULT '',
    token TEXT,
    annotations TEXT NOT NULL DEFAULT '{}',
    workflow_graph TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    last_sync_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_id INTEGER NOT NULL REFERENCES pipelines(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    archived INTEGER NOT NULL DEFAULT 0,
    permutations TEXT NOT NULL DEFAULT '[{}]',
    UNIQUE(pipeline_id, name)
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_id INTEGER NOT NULL REFERENCES pipelines(id) ON DELETE CASCADE,
    type TEXT NOT NULL DEFAULT 'pipeline',
    sha TEXT NOT NULL DEFAULT '',
    config_pipeline_sha TEXT,
    start_from TEXT NOT NULL,
    cause_message TEXT NOT NULL DEFAULT '',
    meta TEXT NOT NULL DEFAULT '{}',
    changed_files TEXT NOT NULL DEFAULT '[]',
    username TEXT,
    scm_context TEXT,
    commit_branch TEXT,
    pr_ref TEXT,
    pr_num INTEGER,
    pr_info TEXT,
    parent_build_id INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS builds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    event_id INTEGER NOT NULL REFERENCES events(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'QUEUED',
    status_message TEXT,
    sha TEXT NOT NULL DEFAULT '',
    meta TEXT NOT NULL DEFAULT '{}',
    stats TEXT NOT NULL DEFAULT '{}',
    parent_build_id INTEGER,
    created_at TEXT NOT NULL,
    start_time TEXT,
    end_time TEXT
);

CREATE TABLE IF NOT EXISTS triggers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    src TEXT NOT NULL,
    dest TEXT NOT NULL,
    dest_pipeline_id INTEGER NOT NULL,
    UNIQUE(src, dest)
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    scm_context TEXT NOT NULL,
    token TEXT,
    UNIQUE(username, scm_context)
);

CREATE INDEX IF NOT EXISTS idx_jobs_pipeline ON jobs(pipeline_id);
CREATE INDEX IF NOT EXISTS idx_events_pipeline ON events(pipeline_id);
CREATE INDEX IF NOT EXISTS idx_builds_job_status ON builds(job_id, status);
CREATE INDEX IF NOT EXISTS idx_builds_event ON builds(event_id);
CREATE INDEX IF NOT EXISTS idx_triggers_src ON triggers(src);
CREATE INDEX IF NOT EXISTS idx_triggers_dest_pipeline ON triggers(dest_pipeline_id);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def _row_to_pipeline(row: aiosqlite.Row) -> Pipeline:
    graph = _load_json(row["workflow_graph"], {})
    return Pipeline(
        id=row["id"],
        scm_uri=row["scm_uri"],
        scm_context=row["scm_context"],
        token=row["token"],
        annotations=_load_json(row["annotations"], {}),
        workflow_graph=WorkflowGraph(**graph),
        created_at=_str_to_dt(row["created_at"]),
        last_sync_at=_str_to_dt(row["last_sync_at"]),
    )


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        pipeline_id=row["pipeline_id"],
        name=row["name"],
        archived=bool(row["archived"]),
        permutations=_load_json(row["permutations"], [{}]),
    )


def _row_to_event(row: aiosqlite.Row) -> Event:
    return Event(
        id=row["id"],
        pipeline_id=row["pipeline_id"],
        type=EventType(row["type"]),
        sha=row["sha"],
        config_pipeline_sha=row["config_pipeline_sha"],
        start_from=row["start_from"],
        cause_message=row["cause_message"],
        meta=_load_json(row["meta"], {}),
        changed_files=_load_json(row["changed_files"], []),
        username=row["username"],
        scm_context=row["scm_context"],
        commit_branch=row["commit_branch"],
        pr_ref=row["pr_ref"],
        pr_num=row["pr_num"],
        pr_info=_load_json(row["pr_info"], None),
        parent_build_id=row["parent_build_id"],
        created_at=_str_to_dt(row["created_at"]),
    )


def _row_to_build(row: aiosqlite.Row) -> Build:
    return Build(
        id=row["id"],
        job_id=row["job_id"],
        event_id=row["event_id"],
        status=BuildStatus(row["status"]),
        status_message=row["status_message"],
        sha=row["sha"],
        meta=_load_json(row["meta"], {}),
        stats=_load_json(row["stats"], {}),
        parent_build_id=row["parent_build_id"],
        created_at=_str_to_dt(row["created_at"]),
        start_time=_str_to_dt(row["start_time"]),
        end_time=_str_to_dt(row["end_time"]),
    )
