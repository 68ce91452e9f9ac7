"""Event creation.

``EventFactory`` persists one event and queues the builds its trigger
token starts. ``EventBatchCreator`` turns one SCM notification into one
event per affected pipeline, resolving each pipeline's pinned
configuration commit along the way.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from conductor.errors import InternalError
from conductor.models import (
    Build,
    BuildStatus,
    Event,
    EventType,
    Pipeline,
    ScmConfig,
    TriggerKind,
    pr_job_name,
    trigger_token,
)
from conductor.registry import Registry
from conductor.scm import ScmClient
from conductor.workflow import get_next_jobs

logger = logging.getLogger(__name__)


class EventCause(BaseModel):
    """What happened in the SCM, as far as event creation cares."""

    kind: TriggerKind
    branch: str  # Branch that was pushed, or that the PR targets
    sha: str
    username: str
    scm_context: str
    token: str  # Token used for SCM lookups
    changed_files: list[str] = Field(default_factory=list)
    action: Literal["push", "opened", "reopened", "synchronized"] = "push"
    pr_num: int | None = None
    pr_ref: str | None = None


def pipeline_scm_config(pipeline: Pipeline, fallback_token: str | None = None) -> ScmConfig:
    """SCM identity of a pipeline, using its own credential when it has one."""
    token = pipeline.token or fallback_token
    if not token:
        raise InternalError(f"Pipeline {pipeline.id} has no SCM token")
    return ScmConfig(
        scm_uri=pipeline.scm_uri,
        token=token,
        scm_context=pipeline.scm_context,
    )


class EventFactory:
    """Create events and queue the builds they start."""

    def __init__(self, registry: Registry, scm: ScmClient):
        self.registry = registry
        self.scm = scm

    async def create(self, event: Event, pipeline: Pipeline) -> Event:
        event = await self.registry.create_event(event)
        jobs = get_next_jobs(pipeline.workflow_graph, event.start_from)
        builds = await self.start_builds(event, pipeline, jobs)
        logger.info(
            "Event %d on pipeline %d from %s: %d build(s) queued",
            event.id,
            pipeline.id,
            event.start_from,
            len(builds),
        )
        return event

    async def start_builds(
        self,
        event: Event,
        pipeline: Pipeline,
        job_names: list[str],
        parent_build_id: int | None = None,
    ) -> list[Build]:
        """Queue one build per named job in ``event``.

        PR events run the PR's copy of each job. Unknown and archived jobs
        are skipped.
        """
        builds: list[Build] = []
        for name in job_names:
            if event.type == EventType.PR and event.pr_num is not None:
                name = pr_job_name(event.pr_num, name)

            job = await self.registry.get_job_by_name(pipeline.id, name)
            if job is None or job.archived:
                logger.debug("Skipping job %s on pipeline %d (missing or archived)", name, pipeline.id)
                continue

            build = Build(
                job_id=job.id,
                event_id=event.id,
                status=BuildStatus.QUEUED,
                sha=event.sha,
                parent_build_id=parent_build_id or event.parent_build_id,
            )
            builds.append(await self.registry.create_build(build))
        return builds

    async def create_external_event(
        self,
        pipeline: Pipeline,
        *,
        start_from: str,
        cause_message: str,
        parent_build_id: int,
        username: str,
        scm_context: str,
    ) -> Event:
        """Start ``pipeline`` from another pipeline's job, at its branch head."""
        sha = await self.scm.get_commit_sha(pipeline_scm_config(pipeline))
        event = Event(
            pipeline_id=pipeline.id,
            type=EventType.PIPELINE,
            sha=sha,
            config_pipeline_sha=sha,
            start_from=start_from,
            cause_message=cause_message,
            username=username,
            scm_context=scm_context or pipeline.scm_context,
            parent_build_id=parent_build_id,
        )
        return await self.create(event, pipeline)


class EventBatchCreator:
    """One event per affected pipeline for a single SCM notification."""

    def __init__(self, event_factory: EventFactory, scm: ScmClient):
        self.event_factory = event_factory
        self.scm = scm

    async def create_events(self, pipelines: list[Pipeline], cause: EventCause) -> list[Event]:
        return list(await asyncio.gather(*(self._create_one(p, cause) for p in pipelines)))

    async def _create_one(self, pipeline: Pipeline, cause: EventCause) -> Event:
        own_branch = pipeline.branch == cause.branch
        start_from = trigger_token(cause.kind, None if own_branch else cause.branch)

        # Pin the configuration to the pipeline's own branch head, which can
        # differ from the triggering sha for cross-branch subscribers.
        config = pipeline_scm_config(pipeline, cause.token)
        config_pipeline_sha = await self.scm.get_commit_sha(config)

        fields: dict[str, Any] = dict(
            pipeline_id=pipeline.id,
            type=EventType.PIPELINE,
            sha=cause.sha,
            config_pipeline_sha=config_pipeline_sha,
            start_from=start_from,
            changed_files=cause.changed_files,
            username=cause.username,
            scm_context=cause.scm_context,
        )

        if cause.kind == "commit":
            fields["commit_branch"] = cause.branch
            fields["cause_message"] = f"Merged by {cause.username}"
        else:
            display = self.scm.get_display_name(cause.scm_context)
            fields["cause_message"] = (
                f"{cause.action.capitalize()} by {display}:{cause.username}"
            )
            if own_branch:
                pr_config = config.model_copy(update={"pr_num": cause.pr_num})
                fields.update(
                    type=EventType.PR,
                    pr_ref=cause.pr_ref,
                    pr_num=cause.pr_num,
                    pr_info=await self.scm.get_pr_info(pr_config),
                )

        return await self.event_factory.create(Event(**fields), pipeline)
