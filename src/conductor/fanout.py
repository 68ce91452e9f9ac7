"""Branch fan-out — which pipelines care about a change on one branch."""

from __future__ import annotations

import logging

from conductor.models import Pipeline, ScmConfig, ScmUri, TriggerKind, trigger_token
from conductor.registry import Registry
from conductor.scm import ScmClient
from conductor.workflow import get_next_jobs

logger = logging.getLogger(__name__)


def has_triggered_job(pipeline: Pipeline, start_from: str) -> bool:
    return len(get_next_jobs(pipeline.workflow_graph, start_from)) > 0


class BranchFanoutResolver:
    """Find every pipeline of a repository affected by a change on ``branch``.

    Pipelines on other branches qualify only when their workflow graph
    subscribes to ``~<kind>:<branch>``. The pipeline registered on the
    changed branch itself is always included.
    """

    def __init__(self, registry: Registry, scm: ScmClient):
        self.registry = registry
        self.scm = scm

    async def resolve(
        self, scm_config: ScmConfig, branch: str, kind: TriggerKind
    ) -> list[Pipeline]:
        uri = ScmUri.parse(scm_config.scm_uri)
        branches = await self.scm.get_branch_list(scm_config)

        # The changed branch is handled separately below; it may already be
        # deleted from the branch list.
        other_uris = [str(uri.with_branch(b)) for b in branches if b != branch]
        candidates = await self.registry.list_pipelines_by_scm_uris(other_uris)

        start_from = trigger_token(kind, branch)
        pipelines = [p for p in candidates if has_triggered_job(p, start_from)]

        own = await self.registry.get_pipeline_by_scm_uri(scm_config.scm_uri)
        if own is not None:
            pipelines.append(own)

        logger.debug(
            "Fan-out for %s on %s: %d pipeline(s) (%d subscriber(s))",
            start_from,
            uri,
            len(pipelines),
            len(pipelines) - (1 if own else 0),
        )
        return pipelines
