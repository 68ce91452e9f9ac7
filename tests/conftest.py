"""Shared fixtures: a temporary registry, a mocked SCM and a data seeder."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from conductor.errors import ConductorError
from conductor.models import (
    Build,
    BuildStatus,
    Event,
    EventType,
    Job,
    Permissions,
    Pipeline,
    User,
)
from conductor.registry import Registry
from conductor.server import (
    conductor_error_handler,
    database_error_handler,
    scm_error_handler,
    unexpected_error_handler,
)
from conductor.workflow import PipelineDefinition, WorkflowEdge, WorkflowGraph, WorkflowNode

SCM_CONTEXT = "github:github.com"
REPO_ID = "100"


def make_graph(*edges: tuple[str, str]) -> WorkflowGraph:
    names: list[str] = []
    for src, dest in edges:
        for name in (src, dest):
            if name not in names:
                names.append(name)
    return WorkflowGraph(
        nodes=[WorkflowNode(name=n) for n in names],
        edges=[WorkflowEdge(src=s, dest=d) for s, d in edges],
    )


def scm_uri(branch: str, repo_id: str = REPO_ID) -> str:
    return f"github.com:{repo_id}:{branch}"


class Seeder:
    """Creates registry rows with sensible defaults."""

    def __init__(self, registry: Registry):
        self.registry = registry

    async def pipeline(
        self,
        branch: str = "main",
        *,
        id: int | None = None,
        edges: tuple[tuple[str, str], ...] = (),
        jobs: list[str] | None = None,
        annotations: dict | None = None,
        repo_id: str = REPO_ID,
        token: str | None = "pipeline-token",
    ) -> Pipeline:
        pipeline = await self.registry.create_pipeline(
            Pipeline(
                id=id,
                scm_uri=scm_uri(branch, repo_id),
                scm_context=SCM_CONTEXT,
                token=token,
                annotations=annotations or {},
                workflow_graph=make_graph(*edges),
            )
        )
        if jobs is None:
            jobs = []
            for _, dest in edges:
                if not dest.startswith("~") and dest not in jobs:
                    jobs.append(dest)
        for name in jobs:
            await self.job(pipeline, name)
        return pipeline

    async def job(self, pipeline: Pipeline, name: str, **kwargs) -> Job:
        return await self.registry.create_job(Job(pipeline_id=pipeline.id, name=name, **kwargs))

    async def event(self, pipeline: Pipeline, **kwargs) -> Event:
        kwargs.setdefault("start_from", "~commit")
        kwargs.setdefault("sha", "abc123")
        return await self.registry.create_event(Event(pipeline_id=pipeline.id, **kwargs))

    async def pr_event(self, pipeline: Pipeline, pr_num: int, **kwargs) -> Event:
        return await self.event(
            pipeline, type=EventType.PR, start_from="~pr", pr_num=pr_num, **kwargs
        )

    async def build(
        self, job: Job, event: Event, status: BuildStatus = BuildStatus.QUEUED, **kwargs
    ) -> Build:
        return await self.registry.create_build(
            Build(job_id=job.id, event_id=event.id, status=status, **kwargs)
        )

    async def user(self, username: str, token: str | None = "user-token") -> User:
        return await self.registry.create_user(
            User(username=username, scm_context=SCM_CONTEXT, token=token)
        )


@pytest_asyncio.fixture
async def registry(tmp_path):
    """Create a fresh registry for each test."""
    reg = Registry(str(tmp_path / "conductor.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest.fixture
def seed(registry) -> Seeder:
    return Seeder(registry)


@pytest.fixture
def scm():
    """Mock SCM client with harmless defaults."""
    client = MagicMock()
    client.parse_hook = AsyncMock(return_value=None)
    client.parse_url = AsyncMock(return_value=scm_uri("main"))
    client.get_branch_list = AsyncMock(return_value=["main"])
    client.get_commit_sha = AsyncMock(return_value="config-sha")
    client.get_pr_info = AsyncMock(return_value={"name": "PR-5", "url": "https://pr/5"})
    client.get_changed_files = AsyncMock(return_value=["README.md"])
    client.get_permissions = AsyncMock(return_value=Permissions(pull=True, push=True))
    client.get_open_pull_requests = AsyncMock(return_value=[])
    client.get_pipeline_definition = AsyncMock(return_value=PipelineDefinition())
    client.get_display_name = MagicMock(return_value="GitHub")
    return client


@pytest.fixture
def make_app():
    """Factory for a bare app with the given routers and the error handlers."""

    def _make(*routers) -> FastAPI:
        app = FastAPI()
        app.add_exception_handler(ConductorError, conductor_error_handler)
        app.add_exception_handler(httpx.HTTPError, scm_error_handler)
        app.add_exception_handler(aiosqlite.Error, database_error_handler)
        app.add_exception_handler(Exception, unexpected_error_handler)
        for router in routers:
            app.include_router(router)
        return app

    return _make
