"""Tests for TriggerCascade: downstream jobs and cross-pipeline triggers."""

from unittest.mock import AsyncMock

import pytest

from conductor.cascade import SAME_PIPELINE, TriggerCascade, source_token
from conductor.errors import FanoutError
from conductor.events import EventFactory
from conductor.models import BuildIdentity, BuildStatus, TriggerRecord


@pytest.fixture
def cascade(registry, scm):
    scm.get_commit_sha.return_value = "dest-head"
    return TriggerCascade(registry, EventFactory(registry, scm))


@pytest.fixture
async def upstream(registry, seed):
    """Pipeline 5: ~commit → main → publish, with a successful ``main`` build."""
    pipeline = await seed.pipeline(
        "main", id=5, edges=(("~commit", "main"), ("main", "publish"))
    )
    job = await registry.get_job_by_name(5, "main")
    event = await seed.event(pipeline)
    build = await seed.build(job, event, BuildStatus.SUCCESS)
    return pipeline, job, event, build


async def subscriber(seed, pipeline_id, branch, *jobs):
    """Pipeline whose ``jobs`` require ``~sd@5:main``."""
    return await seed.pipeline(
        branch, id=pipeline_id, repo_id="200", edges=tuple(("~sd@5:main", j) for j in jobs)
    )


REQUESTER = BuildIdentity(build_id=1, scm_context="github:github.com")


class TestSamePipeline:
    async def test_next_jobs_join_the_same_event(self, cascade, registry, upstream):
        pipeline, job, event, build = upstream

        result = await cascade.cascade(pipeline, job, build, REQUESTER)

        builds = await registry.list_builds_for_event(event.id)
        publish = await registry.get_job_by_name(5, "publish")
        queued = [b for b in builds if b.job_id == publish.id]
        assert len(queued) == 1
        assert queued[0].status == BuildStatus.QUEUED
        assert queued[0].parent_build_id == build.id
        assert result.created[SAME_PIPELINE] == [queued[0].id]

    async def test_pr_job_starts_pr_copy(self, cascade, registry, seed):
        pipeline = await seed.pipeline(
            "main",
            edges=(("~pr", "main"), ("main", "publish")),
            jobs=["main", "publish", "PR-3:main", "PR-3:publish"],
        )
        job = await registry.get_job_by_name(pipeline.id, "PR-3:main")
        event = await seed.pr_event(pipeline, 3)
        build = await seed.build(job, event, BuildStatus.SUCCESS)

        await cascade.cascade(pipeline, job, build, REQUESTER)

        pr_publish = await registry.get_job_by_name(pipeline.id, "PR-3:publish")
        builds = await registry.list_builds_for_event(event.id)
        assert [b.job_id for b in builds if b.id != build.id] == [pr_publish.id]

    async def test_archived_next_job_skipped(self, cascade, registry, upstream):
        pipeline, job, event, build = upstream
        publish = await registry.get_job_by_name(5, "publish")
        publish.archived = True
        await registry.update_job(publish)

        result = await cascade.cascade(pipeline, job, build, REQUESTER)

        assert result.created[SAME_PIPELINE] == []
        assert len(await registry.list_builds_for_event(event.id)) == 1


class TestExternalTriggers:
    async def test_source_token(self, upstream):
        pipeline, job, _, _ = upstream
        assert source_token(pipeline, job) == "~sd@5:main"

    async def test_one_event_per_destination(self, cascade, registry, seed, upstream):
        pipeline, job, _, build = upstream
        await subscriber(seed, 9, "main", "deploy")
        await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@9:deploy"))

        await cascade.cascade(pipeline, job, build, REQUESTER)

        events = await registry.list_events(9)
        assert len(events) == 1
        event = events[0]
        assert event.start_from == "~sd@5:main"
        assert event.parent_build_id == build.id
        assert event.cause_message == f"Triggered by build {build.id}"
        assert event.sha == "dest-head"

        deploy = await registry.get_job_by_name(9, "deploy")
        builds = await registry.list_builds_for_event(event.id)
        assert [b.job_id for b in builds] == [deploy.id]

    async def test_duplicate_records_create_one_event(self, cascade, registry, seed, upstream):
        pipeline, job, _, build = upstream
        await subscriber(seed, 42, "main", "deploy")
        record = TriggerRecord(src="~sd@5:main", dest="~sd@42:deploy")
        registry.list_triggers = AsyncMock(return_value=[record, record])

        await cascade.cascade(pipeline, job, build, REQUESTER)

        assert len(await registry.list_events(42)) == 1

    async def test_jobs_in_same_destination_collapse(self, cascade, registry, seed, upstream):
        pipeline, job, _, build = upstream
        await subscriber(seed, 9, "main", "deploy", "verify")
        await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@9:deploy"))
        await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@9:verify"))

        await cascade.cascade(pipeline, job, build, REQUESTER)

        events = await registry.list_events(9)
        assert len(events) == 1
        assert len(await registry.list_builds_for_event(events[0].id)) == 2

    async def test_failure_does_not_block_other_destinations(
        self, cascade, registry, seed, upstream
    ):
        pipeline, job, _, build = upstream
        await subscriber(seed, 9, "main", "deploy")
        await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@9:deploy"))
        await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@99:gone"))

        with pytest.raises(FanoutError) as exc_info:
            await cascade.cascade(pipeline, job, build, REQUESTER)

        err = exc_info.value
        assert list(err.failures) == ["pipeline:99"]
        assert "does not exist" in err.failures["pipeline:99"]
        assert "pipeline:9" in err.succeeded
        assert SAME_PIPELINE in err.succeeded
        assert len(await registry.list_events(9)) == 1
        assert err.to_dict()["statusCode"] == 500

    async def test_scm_failure_reported_per_destination(
        self, cascade, registry, seed, scm, upstream
    ):
        pipeline, job, _, build = upstream
        await subscriber(seed, 9, "main", "deploy")
        await subscriber(seed, 10, "release", "deploy")
        await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@9:deploy"))
        await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@10:deploy"))

        async def commit_sha(config):
            if config.scm_uri.endswith(":release"):
                raise RuntimeError("SCM timeout")
            return "dest-head"

        scm.get_commit_sha.side_effect = commit_sha

        with pytest.raises(FanoutError) as exc_info:
            await cascade.cascade(pipeline, job, build, REQUESTER)

        assert exc_info.value.failures == {"pipeline:10": "SCM timeout"}
        assert len(await registry.list_events(9)) == 1
        assert await registry.list_events(10) == []

    async def test_nothing_downstream(self, cascade, registry, seed):
        pipeline = await seed.pipeline("main", edges=(("~commit", "solo"),))
        job = await registry.get_job_by_name(pipeline.id, "solo")
        build = await seed.build(job, await seed.event(pipeline), BuildStatus.SUCCESS)

        result = await cascade.cascade(pipeline, job, build, REQUESTER)

        assert result.failures == {}
        assert result.created == {SAME_PIPELINE: []}
