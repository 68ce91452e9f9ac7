"""Core data models for Conductor."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from conductor.workflow import WorkflowGraph


# ── Build Status ─────────────────────────────────────────────────────────────


class BuildStatus(str, enum.Enum):
    """Build lifecycle states."""

    QUEUED = "QUEUED"
    BLOCKED = "BLOCKED"
    RUNNING = "RUNNING"
    UNSTABLE = "UNSTABLE"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"


# Builds in these states can still be updated or stopped.
ACTIVE_STATUSES = frozenset(
    {BuildStatus.RUNNING, BuildStatus.QUEUED, BuildStatus.BLOCKED, BuildStatus.UNSTABLE}
)

# Transition into one of these stamps end_time and merges meta into the event.
FINISHED_STATUSES = frozenset({BuildStatus.SUCCESS, BuildStatus.FAILURE, BuildStatus.ABORTED})


class EventType(str, enum.Enum):
    PIPELINE = "pipeline"
    PR = "pr"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Trigger Tokens ───────────────────────────────────────────────────────────

EXTERNAL_TRIGGER = re.compile(r"^~sd@(\d+):([\w-]+)$")

TriggerKind = Literal["commit", "pr"]


def trigger_token(kind: TriggerKind, branch: str | None = None) -> str:
    """``~commit``, ``~pr``, ``~commit:<branch>`` or ``~pr:<branch>``."""
    if branch:
        return f"~{kind}:{branch}"
    return f"~{kind}"


@dataclass(frozen=True)
class TriggerLocator:
    """A cross-pipeline trigger endpoint: ``~sd@<pipeline_id>:<job_name>``."""

    pipeline_id: int
    job_name: str

    @classmethod
    def parse(cls, value: str) -> TriggerLocator:
        match = EXTERNAL_TRIGGER.match(value)
        if not match:
            raise ValueError(f"Invalid external trigger locator: {value!r}")
        return cls(pipeline_id=int(match.group(1)), job_name=match.group(2))

    def format(self) -> str:
        return f"~sd@{self.pipeline_id}:{self.job_name}"

    def __str__(self) -> str:
        return self.format()


def is_external_trigger(value: str) -> bool:
    return EXTERNAL_TRIGGER.match(value) is not None


# ── SCM URIs ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ScmUri:
    """``<host>:<repo_id>:<branch>``, e.g. ``github.com:1234:main``."""

    host: str
    repo_id: str
    branch: str

    @classmethod
    def parse(cls, value: str) -> ScmUri:
        parts = value.split(":", 2)
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid scm uri: {value!r}")
        return cls(host=parts[0], repo_id=parts[1], branch=parts[2])

    def with_branch(self, branch: str) -> ScmUri:
        return ScmUri(host=self.host, repo_id=self.repo_id, branch=branch)

    def __str__(self) -> str:
        return f"{self.host}:{self.repo_id}:{self.branch}"


# ── PR Jobs ──────────────────────────────────────────────────────────────────


def pr_job_prefix(pr_num: int | str) -> str:
    return f"PR-{pr_num}"


def pr_job_name(pr_num: int | str, job_name: str) -> str:
    return f"{pr_job_prefix(pr_num)}:{job_name}"


def is_pr_job(job_name: str, pr_num: int | str) -> bool:
    """Whether ``job_name`` belongs to PR ``pr_num`` (``PR-5`` or ``PR-5:main``)."""
    prefix = pr_job_prefix(pr_num)
    return job_name == prefix or job_name.startswith(f"{prefix}:")


def base_job_name(job_name: str) -> str:
    """Strip a ``PR-<n>:`` prefix: ``PR-5:main`` → ``main``."""
    if job_name.startswith("PR-") and ":" in job_name:
        return job_name.split(":", 1)[1]
    return job_name


# ── Persisted Entities ───────────────────────────────────────────────────────


class Pipeline(BaseModel):
    """A pipeline registered for one branch of a repository."""

    id: int | None = None
    scm_uri: str
    scm_context: str = ""
    token: str | None = Field(default=None, exclude=True, description="SCM credential")
    annotations: dict[str, Any] = Field(default_factory=dict)
    workflow_graph: WorkflowGraph = Field(default_factory=WorkflowGraph)
    created_at: datetime = Field(default_factory=_now)
    last_sync_at: datetime | None = None

    @property
    def branch(self) -> str:
        return ScmUri.parse(self.scm_uri).branch


class Job(BaseModel):
    id: int | None = None
    pipeline_id: int
    name: str
    archived: bool = False
    permutations: list[dict[str, Any]] = Field(default_factory=lambda: [{}])

    @property
    def settings(self) -> dict[str, Any]:
        if not self.permutations:
            return {}
        return self.permutations[0].get("settings", {})


class Event(BaseModel):
    """All builds created from one triggering cause within a pipeline."""

    id: int | None = None
    pipeline_id: int
    type: EventType = EventType.PIPELINE
    sha: str = ""
    config_pipeline_sha: str | None = None
    start_from: str
    cause_message: str = ""
    meta: dict[str, Any] = Field(default_factory=dict)
    changed_files: list[str] = Field(default_factory=list)
    username: str | None = None
    scm_context: str | None = None
    commit_branch: str | None = None
    pr_ref: str | None = None
    pr_num: int | None = None
    pr_info: dict[str, Any] | None = None
    parent_build_id: int | None = Field(
        default=None, description="Build whose success caused this event (provenance only)"
    )
    created_at: datetime = Field(default_factory=_now)


class Build(BaseModel):
    id: int | None = None
    job_id: int
    event_id: int
    status: BuildStatus = BuildStatus.QUEUED
    status_message: str | None = None
    sha: str = ""
    meta: dict[str, Any] = Field(default_factory=dict)
    stats: dict[str, Any] = Field(default_factory=dict)
    parent_build_id: int | None = None
    created_at: datetime = Field(default_factory=_now)
    start_time: datetime | None = None
    end_time: datetime | None = None

    def is_done(self) -> bool:
        return self.status not in ACTIVE_STATUSES


class TriggerRecord(BaseModel):
    """Completion of job ``src`` starts a new event on the pipeline in ``dest``."""

    id: int | None = None
    src: str
    dest: str

    @property
    def locator(self) -> TriggerLocator:
        return TriggerLocator.parse(self.dest)


class User(BaseModel):
    id: int | None = None
    username: str
    scm_context: str
    token: str | None = Field(default=None, exclude=True)


class Permissions(BaseModel):
    admin: bool = False
    push: bool = False
    pull: bool = False


# ── Requester Identity ───────────────────────────────────────────────────────


class BuildIdentity(BaseModel):
    """A request made by a running build using its own credential."""

    kind: Literal["build"] = "build"
    build_id: int
    scm_context: str = ""

    @property
    def display_name(self) -> str:
        return str(self.build_id)


class HumanUser(BaseModel):
    kind: Literal["user"] = "user"
    username: str
    scm_context: str = ""

    @property
    def display_name(self) -> str:
        return self.username


Requester = Union[BuildIdentity, HumanUser]


# ── Requests & Notifications ─────────────────────────────────────────────────


class BuildUpdate(BaseModel):
    """Payload of ``PUT /builds/{id}``."""

    model_config = ConfigDict(populate_by_name=True)

    status: str | None = None
    status_message: str | None = Field(default=None, alias="statusMessage")
    meta: dict[str, Any] | None = None
    stats: dict[str, Any] | None = None


class BuildStatusNotification(BaseModel):
    """Payload of the ``build_status`` notification."""

    settings: dict[str, Any] = Field(default_factory=dict)
    status: BuildStatus
    event: dict[str, Any]
    pipeline: dict[str, Any]
    job_name: str
    build: dict[str, Any]
    build_link: str


# ── SCM Hooks ────────────────────────────────────────────────────────────────


class ParsedHook(BaseModel):
    """Normalized SCM notification, produced by ``ScmClient.parse_hook``."""

    hook_id: str
    type: Literal["pr", "repo"]
    action: str
    username: str
    scm_context: str
    checkout_url: str
    branch: str
    sha: str
    last_commit_message: str = ""
    pr_num: int | None = None
    pr_ref: str | None = None
    pr_source: Literal["branch", "fork"] | None = None
    changed_files: list[str] = Field(default_factory=list)

    @property
    def full_checkout_url(self) -> str:
        return f"{self.checkout_url}#{self.branch}"


class ScmConfig(BaseModel):
    """Repository identity and credential for SCM calls."""

    scm_uri: str
    token: str
    scm_context: str
    pr_num: int | None = None


class WebhookResponse(BaseModel):
    """Outcome of routing one SCM notification."""

    status_code: int = 204
    events: list[int] = Field(default_factory=list)
    message: str | None = None
