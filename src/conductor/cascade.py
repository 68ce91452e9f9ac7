"""Trigger cascade — what a successful build starts next.

A successful build starts the jobs that follow it in its own pipeline's
workflow graph (new builds in the same event) and one new event on every
other pipeline that subscribed to it through a ``TriggerRecord``.

Every destination is independent: all of them are attempted, successes
stay committed, and failures are collected per destination.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from conductor.errors import FanoutError, NotFoundError
from conductor.events import EventFactory
from conductor.models import (
    Build,
    Event,
    Job,
    Pipeline,
    Requester,
    TriggerLocator,
    base_job_name,
)
from conductor.registry import Registry
from conductor.workflow import get_next_jobs

logger = logging.getLogger(__name__)

SAME_PIPELINE = "same-pipeline"


@dataclass
class CascadeResult:
    """Outcome of one cascade: ``created`` maps a label to what it started."""

    created: dict[str, list[int]] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)


def source_token(pipeline: Pipeline, job: Job) -> str:
    return TriggerLocator(pipeline_id=pipeline.id, job_name=job.name).format()


class TriggerCascade:
    def __init__(self, registry: Registry, event_factory: EventFactory):
        self.registry = registry
        self.event_factory = event_factory

    async def cascade(
        self, pipeline: Pipeline, job: Job, build: Build, requester: Requester
    ) -> CascadeResult:
        """Start everything downstream of ``build``.

        Raises:
            FanoutError: One or more destinations failed. Successful
                destinations are listed in ``succeeded`` and stay committed.
        """
        src = source_token(pipeline, job)
        records = await self.registry.list_triggers(src)

        # Several jobs of one pipeline may subscribe to the same source; the
        # pipeline still gets exactly one event.
        dest_pipeline_ids: list[int] = []
        for record in records:
            pipeline_id = record.locator.pipeline_id
            if pipeline_id not in dest_pipeline_ids:
                dest_pipeline_ids.append(pipeline_id)

        labels = [SAME_PIPELINE] + [f"pipeline:{pid}" for pid in dest_pipeline_ids]
        outcomes = await asyncio.gather(
            self._start_next_jobs(pipeline, job, build),
            *(
                self._trigger_pipeline(pid, src, build, requester)
                for pid in dest_pipeline_ids
            ),
            return_exceptions=True,
        )

        result = CascadeResult()
        for label, outcome in zip(labels, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Cascade from %s to %s failed: %s", src, label, outcome)
                result.failures[label] = str(outcome) or type(outcome).__name__
            else:
                result.created[label] = outcome

        if result.failures:
            raise FanoutError(
                f"Build {build.id} succeeded but {len(result.failures)} downstream "
                "trigger(s) failed",
                failures=result.failures,
                succeeded=sorted(result.created),
            )

        logger.info(
            "Build %d (%s) cascaded to %d pipeline(s)", build.id, src, len(dest_pipeline_ids)
        )
        return result

    async def _start_next_jobs(self, pipeline: Pipeline, job: Job, build: Build) -> list[int]:
        """Queue the jobs that follow ``job`` in the same event."""
        next_jobs = get_next_jobs(pipeline.workflow_graph, base_job_name(job.name))
        if not next_jobs:
            return []

        event = await self.registry.get_event(build.event_id)
        if event is None:
            raise NotFoundError(f"Event {build.event_id} does not exist")

        builds = await self.event_factory.start_builds(
            event, pipeline, next_jobs, parent_build_id=build.id
        )
        return [b.id for b in builds]

    async def _trigger_pipeline(
        self, pipeline_id: int, src: str, build: Build, requester: Requester
    ) -> list[int]:
        pipeline = await self.registry.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError(f"Pipeline {pipeline_id} does not exist")

        event: Event = await self.event_factory.create_external_event(
            pipeline,
            start_from=src,
            cause_message=f"Triggered by build {build.id}",
            parent_build_id=build.id,
            username=requester.display_name,
            scm_context=requester.scm_context,
        )
        return [event.id]
