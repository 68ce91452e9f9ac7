"""Pipeline sync — refresh a pipeline from its definition file in the SCM.

Sync makes the registry match the repository:
- annotations and the workflow graph come from the definition file
- defined jobs exist and are active, removed jobs are archived
- every open PR has a ``PR-<n>:<job>`` copy of each job reachable from
  ``~pr``; jobs of PRs that are no longer open are archived
- ``~sd@<pipeline>:<job>`` requirements become TriggerRecords pointing at
  this pipeline
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from conductor.events import pipeline_scm_config
from conductor.models import (
    Job,
    Pipeline,
    TriggerLocator,
    TriggerRecord,
    is_external_trigger,
    pr_job_name,
    trigger_token,
)
from conductor.registry import Registry
from conductor.scm import ScmClient
from conductor.workflow import JobDefinition, PipelineDefinition, build_graph, get_reachable_jobs

logger = logging.getLogger(__name__)

_PR_JOB_RE = re.compile(r"^PR-(\d+)(?::|$)")


def _permutations(job: JobDefinition) -> list[dict[str, Any]]:
    return [
        {
            "image": job.image,
            "steps": job.steps,
            "settings": job.settings,
            "annotations": job.annotations,
        }
    ]


class PipelineSyncer:
    def __init__(self, registry: Registry, scm: ScmClient):
        self.registry = registry
        self.scm = scm

    async def sync(self, pipeline: Pipeline, fallback_token: str | None = None) -> Pipeline:
        """Refresh ``pipeline`` and its jobs. Returns the updated pipeline."""
        config = pipeline_scm_config(pipeline, fallback_token)
        definition = await self.scm.get_pipeline_definition(config)

        pipeline.annotations = definition.annotations
        pipeline.workflow_graph = build_graph(definition)
        pipeline.last_sync_at = datetime.now(timezone.utc)
        await self.registry.update_pipeline(pipeline)

        existing = {j.name: j for j in await self.registry.list_jobs(pipeline.id)}

        await self._sync_defined_jobs(pipeline, definition, existing)

        open_prs = await self.scm.get_open_pull_requests(config)
        await self._sync_pr_jobs(pipeline, definition, existing, open_prs)

        await self._sync_triggers(pipeline, definition)

        logger.info(
            "Synced pipeline %d (%s): %d job(s), %d open PR(s)",
            pipeline.id,
            pipeline.scm_uri,
            len(definition.jobs),
            len(open_prs),
        )
        return pipeline

    async def _ensure_job(
        self, pipeline: Pipeline, name: str, job_def: JobDefinition, existing: dict[str, Job]
    ) -> None:
        permutations = _permutations(job_def)
        job = existing.get(name)
        if job is None:
            existing[name] = await self.registry.create_job(
                Job(pipeline_id=pipeline.id, name=name, permutations=permutations)
            )
            return
        if job.archived or job.permutations != permutations:
            job.archived = False
            job.permutations = permutations
            await self.registry.update_job(job)

    async def _archive(self, job: Job) -> None:
        if job.archived:
            return
        job.archived = True
        await self.registry.update_job(job)
        logger.debug("Archived job %s (pipeline %d)", job.name, job.pipeline_id)

    async def _sync_defined_jobs(
        self, pipeline: Pipeline, definition: PipelineDefinition, existing: dict[str, Job]
    ) -> None:
        for name, job_def in definition.jobs.items():
            await self._ensure_job(pipeline, name, job_def, existing)

        for name, job in list(existing.items()):
            if _PR_JOB_RE.match(name) is None and name not in definition.jobs:
                await self._archive(job)

    async def _sync_pr_jobs(
        self,
        pipeline: Pipeline,
        definition: PipelineDefinition,
        existing: dict[str, Job],
        open_prs: list[int],
    ) -> None:
        pr_jobs = [
            name
            for name in get_reachable_jobs(pipeline.workflow_graph, trigger_token("pr"))
            if name in definition.jobs
        ]
        for pr_num in open_prs:
            for name in pr_jobs:
                await self._ensure_job(
                    pipeline, pr_job_name(pr_num, name), definition.jobs[name], existing
                )

        open_set = {int(n) for n in open_prs}
        for name, job in list(existing.items()):
            match = _PR_JOB_RE.match(name)
            if match and int(match.group(1)) not in open_set:
                await self._archive(job)

    async def _sync_triggers(self, pipeline: Pipeline, definition: PipelineDefinition) -> None:
        records = [
            TriggerRecord(
                src=requirement,
                dest=TriggerLocator(pipeline_id=pipeline.id, job_name=name).format(),
            )
            for name, job_def in definition.jobs.items()
            for requirement in job_def.requires
            if is_external_trigger(requirement)
        ]
        await self.registry.replace_triggers_for_pipeline(pipeline.id, records)
