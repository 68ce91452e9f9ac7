"""Pull request lifecycle — opened, synchronized and closed PRs.

- opened/reopened: sync the pipeline, apply the restrict-pr policy, then
  create events for every pipeline subscribed to PRs on the base branch.
- synchronized: same policy check, abort the PR's in-flight builds, then
  create fresh events for the new head commit.
- closed: abort the PR's in-flight builds and archive its jobs.

PR jobs are named ``PR-<n>:<job>``. Stopping a job aborts only builds that
have not finished yet, so repeated deliveries of the same hook are safe.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from conductor.errors import FanoutError
from conductor.events import EventBatchCreator, EventCause
from conductor.fanout import BranchFanoutResolver
from conductor.models import (
    BuildStatus,
    Job,
    ParsedHook,
    Pipeline,
    ScmConfig,
    WebhookResponse,
    is_pr_job,
)
from conductor.registry import Registry
from conductor.sync import PipelineSyncer

logger = logging.getLogger(__name__)

RESTRICT_PR_ANNOTATION = "conductor.dev/restrict-pr"


def is_restricted_pr(restriction: str, pr_source: str | None) -> bool:
    """Whether a PR from ``pr_source`` (``branch`` or ``fork``) is blocked."""
    if restriction == "all":
        return True
    if restriction in ("branch", "fork"):
        return pr_source == restriction
    return False


def _replace(pipelines: list[Pipeline], synced: Pipeline | None) -> list[Pipeline]:
    """Swap the freshly synced copy of a pipeline into the fan-out list."""
    if synced is None:
        return pipelines
    return [synced if p.id == synced.id else p for p in pipelines]


def abort_message(pr_num: int, action: str) -> str:
    if action == "closed":
        return f"Aborted because PR#{pr_num} was closed"
    return f"Aborted because new commit was pushed to PR#{pr_num}"


class PullRequestLifecycle:
    def __init__(
        self,
        registry: Registry,
        syncer: PipelineSyncer,
        fanout: BranchFanoutResolver,
        batch_creator: EventBatchCreator,
        default_restrict_pr: str = "none",
    ):
        self.registry = registry
        self.syncer = syncer
        self.fanout = fanout
        self.batch_creator = batch_creator
        self.default_restrict_pr = default_restrict_pr

    async def handle(self, hook: ParsedHook, scm_config: ScmConfig) -> WebhookResponse:
        """Dispatch a parsed PR hook. ``scm_config`` addresses the base branch."""
        pipelines = await self.fanout.resolve(scm_config, hook.branch, "pr")
        if not pipelines:
            logger.info(
                "[%s] Skipping since no pipeline is triggered by PRs against %s",
                hook.hook_id,
                hook.full_checkout_url,
            )
            return WebhookResponse(status_code=204)

        pipeline = await self.registry.get_pipeline_by_scm_uri(scm_config.scm_uri)

        if hook.action in ("opened", "reopened"):
            return await self.opened(hook, scm_config, pipeline, pipelines)
        if hook.action == "synchronized":
            return await self.synchronized(hook, scm_config, pipeline, pipelines)
        return await self.closed(hook, scm_config, pipeline)

    # ── Transitions ──────────────────────────────────────────────────────

    async def opened(
        self,
        hook: ParsedHook,
        scm_config: ScmConfig,
        pipeline: Pipeline | None,
        pipelines: list[Pipeline],
    ) -> WebhookResponse:
        if pipeline is not None:
            pipeline = await self.syncer.sync(pipeline, scm_config.token)
            if self._check_restricted(hook, pipeline):
                return WebhookResponse(status_code=204, message="restricted")

        return await self._create_events(hook, scm_config, _replace(pipelines, pipeline))

    async def synchronized(
        self,
        hook: ParsedHook,
        scm_config: ScmConfig,
        pipeline: Pipeline | None,
        pipelines: list[Pipeline],
    ) -> WebhookResponse:
        if pipeline is not None:
            pipeline = await self.syncer.sync(pipeline, scm_config.token)
            if self._check_restricted(hook, pipeline):
                return WebhookResponse(status_code=204, message="restricted")

            jobs = await self._pr_jobs(pipeline, hook.pr_num)
            await self._for_each_job(jobs, lambda j: self.stop_job(j, hook.pr_num, hook.action))
            logger.info("[%s] Job(s) for PR-%s stopped", hook.hook_id, hook.pr_num)

        return await self._create_events(hook, scm_config, _replace(pipelines, pipeline))

    async def closed(
        self, hook: ParsedHook, scm_config: ScmConfig, pipeline: Pipeline | None
    ) -> WebhookResponse:
        if pipeline is None:
            logger.info(
                "[%s] Skipping since PR job for %s does not exist",
                hook.hook_id,
                hook.full_checkout_url,
            )
            return WebhookResponse(status_code=204)

        pipeline = await self.syncer.sync(pipeline, scm_config.token)
        jobs = await self._pr_jobs(pipeline, hook.pr_num)

        async def stop_and_archive(job: Job) -> None:
            await self.stop_job(job, hook.pr_num, hook.action)
            logger.info("[%s] %s stopped", hook.hook_id, job.name)
            job.archived = True
            await self.registry.update_job(job)
            logger.info("[%s] %s disabled and archived", hook.hook_id, job.name)

        await self._for_each_job(jobs, stop_and_archive)
        return WebhookResponse(status_code=200)

    # ── Helpers ──────────────────────────────────────────────────────────

    async def stop_job(self, job: Job, pr_num: int, action: str) -> list[int]:
        """Abort every unfinished build of ``job``. Returns the aborted build ids."""
        stopped: list[int] = []
        for build in await self.registry.get_running_builds(job.id):
            if build.is_done():
                continue
            build.status = BuildStatus.ABORTED
            build.status_message = abort_message(pr_num, action)
            build.end_time = datetime.now(timezone.utc)
            await self.registry.update_build(build)
            stopped.append(build.id)
        return stopped

    def _check_restricted(self, hook: ParsedHook, pipeline: Pipeline) -> bool:
        restriction = pipeline.annotations.get(RESTRICT_PR_ANNOTATION) or self.default_restrict_pr
        if is_restricted_pr(restriction, hook.pr_source):
            logger.info(
                "[%s] Skipping build since pipeline is configured to restrict %s and PR is %s",
                hook.hook_id,
                restriction,
                hook.pr_source,
            )
            return True
        return False

    async def _pr_jobs(self, pipeline: Pipeline, pr_num: int) -> list[Job]:
        jobs = await self.registry.list_jobs(pipeline.id)
        return [j for j in jobs if is_pr_job(j.name, pr_num)]

    async def _for_each_job(self, jobs: list[Job], action) -> None:
        """Run ``action`` on every job concurrently; report failures together."""
        outcomes = await asyncio.gather(*(action(j) for j in jobs), return_exceptions=True)

        failures: dict[str, str] = {}
        succeeded: list[str] = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Stopping %s failed: %s", job.name, outcome)
                failures[job.name] = str(outcome) or type(outcome).__name__
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                succeeded.append(job.name)

        if failures:
            raise FanoutError(
                f"{len(failures)} of {len(jobs)} PR job(s) could not be stopped",
                failures=failures,
                succeeded=succeeded,
            )

    async def _create_events(
        self, hook: ParsedHook, scm_config: ScmConfig, pipelines: list[Pipeline]
    ) -> WebhookResponse:
        cause = EventCause(
            kind="pr",
            branch=hook.branch,
            sha=hook.sha,
            username=hook.username,
            scm_context=hook.scm_context,
            token=scm_config.token,
            changed_files=hook.changed_files,
            action=hook.action,
            pr_num=hook.pr_num,
            pr_ref=hook.pr_ref,
        )
        events = await self.batch_creator.create_events(pipelines, cause)
        for event in events:
            logger.info("[%s] Event %d started", hook.hook_id, event.id)

        if not events:
            return WebhookResponse(status_code=204)
        return WebhookResponse(status_code=201, events=[e.id for e in events])
