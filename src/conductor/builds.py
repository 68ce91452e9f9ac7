"""Build lifecycle — validates and applies status updates to a build.

Who may do what:
- A running build (build identity) may update only itself, to any
  supported status.
- A human may only abort a build, and needs push or admin permission on
  the pipeline's repository, or platform admin rights.

Only builds that are still active (RUNNING, QUEUED, BLOCKED, UNSTABLE)
can be updated. Once a build reaches SUCCESS its downstream cascade runs.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from conductor.cascade import TriggerCascade
from conductor.config import AuthConfig
from conductor.errors import BadRequestError, ForbiddenError, NotFoundError, UnauthorizedError
from conductor.models import (
    ACTIVE_STATUSES,
    FINISHED_STATUSES,
    Build,
    BuildIdentity,
    BuildStatus,
    BuildStatusNotification,
    BuildUpdate,
    Event,
    HumanUser,
    Job,
    Pipeline,
    Requester,
)
from conductor.notifications import NotificationBus
from conductor.registry import Registry
from conductor.scm import ScmClient

logger = logging.getLogger(__name__)


def build_link(ui_uri: str, pipeline_id: int, build_id: int) -> str:
    return f"{ui_uri}/pipelines/{pipeline_id}/builds/{build_id}"


class BuildLifecycleManager:
    def __init__(
        self,
        registry: Registry,
        scm: ScmClient,
        cascade: TriggerCascade,
        notifications: NotificationBus,
        auth_config: AuthConfig,
        ui_uri: str,
    ):
        self.registry = registry
        self.scm = scm
        self.cascade = cascade
        self.notifications = notifications
        self.auth_config = auth_config
        self.ui_uri = ui_uri

    async def update_build(self, build_id: int, requester: Requester, update: BuildUpdate) -> Build:
        """Apply ``update`` to build ``build_id`` on behalf of ``requester``.

        Raises:
            ForbiddenError: Identity mismatch, or the build already finished.
            NotFoundError: Unknown build.
            BadRequestError: Unsupported status, or a human asking for
                anything but ABORTED.
            UnauthorizedError: A human without push or admin rights.
            FanoutError: The update committed but part of the cascade failed.
        """
        if isinstance(requester, BuildIdentity) and requester.build_id != build_id:
            raise ForbiddenError(f"Credential only valid for {requester.build_id}")

        build = await self.registry.get_build(build_id)
        if build is None:
            raise NotFoundError(f"Build {build_id} does not exist")

        if build.status not in ACTIVE_STATUSES:
            raise ForbiddenError("Can only update RUNNING, QUEUED, BLOCKED, or UNSTABLE builds")

        job, pipeline = await self._load_job_and_pipeline(build)

        if isinstance(requester, HumanUser):
            if update.status != BuildStatus.ABORTED.value:
                raise BadRequestError("Can only update builds to ABORTED")
            await self._check_abort_permission(requester, pipeline)

        event = await self.registry.get_event(build.event_id)
        if event is None:
            raise NotFoundError(f"Event {build.event_id} does not exist")

        if update.stats is not None:
            build.stats = {**build.stats, **update.stats}

        if update.status is None:
            if update.status_message:
                build.status_message = update.status_message
        else:
            self._apply_transition(build, event, requester, update)

        build, event = await asyncio.gather(
            self.registry.update_build(build),
            self.registry.update_event(event),
        )
        logger.info(
            "Build %d (%s) updated to %s by %s",
            build.id,
            job.name,
            build.status.value,
            requester.display_name,
        )

        self.notifications.publish(
            BuildStatusNotification(
                settings=job.settings,
                status=build.status,
                event=event.model_dump(mode="json"),
                pipeline=pipeline.model_dump(mode="json"),
                job_name=job.name,
                build=build.model_dump(mode="json"),
                build_link=build_link(self.ui_uri, pipeline.id, build.id),
            )
        )

        if build.status == BuildStatus.SUCCESS:
            await self.cascade.cascade(pipeline, job, build, requester)

        return build

    def _apply_transition(
        self, build: Build, event: Event, requester: Requester, update: BuildUpdate
    ) -> None:
        try:
            desired = BuildStatus(update.status)
        except ValueError:
            raise BadRequestError(f"Cannot update builds to {update.status}") from None

        now = datetime.now(timezone.utc)
        if desired in FINISHED_STATUSES:
            build.meta = update.meta or {}
            event.meta = {**event.meta, **build.meta}
            build.end_time = now
        elif desired == BuildStatus.RUNNING:
            build.start_time = now
        elif desired in (BuildStatus.UNSTABLE, BuildStatus.BLOCKED):
            pass
        else:
            raise BadRequestError(f"Cannot update builds to {desired.value}")

        # An UNSTABLE build keeps its status; completion time and meta above
        # are still recorded.
        if build.status == BuildStatus.UNSTABLE:
            return

        build.status = desired
        if desired == BuildStatus.ABORTED:
            build.status_message = f"Aborted by {requester.display_name}"
        else:
            build.status_message = update.status_message or None

    async def _load_job_and_pipeline(self, build: Build) -> tuple[Job, Pipeline]:
        job = await self.registry.get_job(build.job_id)
        if job is None:
            raise NotFoundError(f"Job {build.job_id} does not exist")
        pipeline = await self.registry.get_pipeline(job.pipeline_id)
        if pipeline is None:
            raise NotFoundError(f"Pipeline {job.pipeline_id} does not exist")
        return job, pipeline

    async def _check_abort_permission(self, requester: HumanUser, pipeline: Pipeline) -> None:
        if self.auth_config.is_admin(requester.username, requester.scm_context):
            return

        denied = UnauthorizedError(
            f"User {requester.username} does not have permission to abort this build"
        )
        user = await self.registry.get_user(requester.username, requester.scm_context)
        if user is None or not user.token:
            raise denied

        permissions = await self.scm.get_permissions(pipeline.scm_uri, user.token)
        if not (permissions.push or permissions.admin):
            raise denied
