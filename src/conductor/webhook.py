"""Webhook receiver — turns SCM notifications into pipeline events.

``POST /webhooks`` hands the raw delivery to ``WebhookEventRouter``:

1. The SCM client parses (and authenticates) the delivery; anything it
   does not recognize is a no-op.
2. Commits marked ``[skip ci]``/``[ci skip]`` and deliveries from ignored
   users are dropped.
3. After a short fixed wait the changed files are fetched. Some SCMs
   compute diff metadata asynchronously after the hook fires.
4. PR notifications go to ``PullRequestLifecycle``; pushes fan out to
   every subscribed pipeline.

Responses: 204 no-op, 201 events created, 200 PR closed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Mapping

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from conductor.errors import InternalError
from conductor.events import EventBatchCreator, EventCause
from conductor.fanout import BranchFanoutResolver
from conductor.models import ParsedHook, ScmConfig, WebhookResponse
from conductor.pull_requests import PullRequestLifecycle
from conductor.registry import Registry
from conductor.scm import ScmClient

logger = logging.getLogger(__name__)

# Seconds to wait before asking the SCM for changed files
WAIT_FOR_CHANGED_FILES = 1.8

SKIP_CI_RE = re.compile(r"\[(skip ci|ci skip)\]")


async def obtain_scm_token(
    registry: Registry, generic_username: str, username: str, scm_context: str
) -> str:
    """Token of ``username``, or of the generic user when they have none.

    SCMs often rate-limit anonymous and per-IP requests harder than token
    requests, so every lookup runs with some user's token.
    """
    user = await registry.get_user(username, scm_context)
    if user is not None and user.token:
        return user.token

    generic = await registry.get_user(generic_username, scm_context)
    if generic is not None and generic.token:
        return generic.token

    raise InternalError(
        f"No SCM token available for {username} or generic user {generic_username}"
    )


class WebhookEventRouter:
    def __init__(
        self,
        registry: Registry,
        scm: ScmClient,
        fanout: BranchFanoutResolver,
        batch_creator: EventBatchCreator,
        pull_requests: PullRequestLifecycle,
        *,
        generic_username: str,
        ignore_commits_by: list[str] | None = None,
        changed_files_delay: float = WAIT_FOR_CHANGED_FILES,
    ):
        self.registry = registry
        self.scm = scm
        self.fanout = fanout
        self.batch_creator = batch_creator
        self.pull_requests = pull_requests
        self.generic_username = generic_username
        self.ignore_commits_by = ignore_commits_by or []
        self.changed_files_delay = changed_files_delay

    async def route(self, headers: Mapping[str, str], body: bytes) -> WebhookResponse:
        hook = await self.scm.parse_hook(headers, body)
        if hook is None:
            return WebhookResponse(status_code=204)

        logger.info("[%s] Received event type %s", hook.hook_id, hook.type)

        if SKIP_CI_RE.search(hook.last_commit_message):
            logger.info("[%s] Skipping due to the commit message", hook.hook_id)
            return WebhookResponse(status_code=204, message="skip ci")

        if hook.username in self.ignore_commits_by:
            logger.info("[%s] Skipping because user %s is ignored", hook.hook_id, hook.username)
            return WebhookResponse(status_code=204, message="ignored user")

        await asyncio.sleep(self.changed_files_delay)

        token = await obtain_scm_token(
            self.registry, self.generic_username, hook.username, hook.scm_context
        )
        payload = json.loads(body or b"{}")
        hook.changed_files = await self.scm.get_changed_files(hook, payload, token)
        logger.info("[%s] Changed files are %s", hook.hook_id, hook.changed_files)

        scm_uri = await self.scm.parse_url(hook.full_checkout_url, token, hook.scm_context)
        scm_config = ScmConfig(scm_uri=scm_uri, token=token, scm_context=hook.scm_context)

        if hook.type == "pr":
            logger.info(
                "[%s] PR #%s %s for %s",
                hook.hook_id,
                hook.pr_num,
                hook.action,
                hook.full_checkout_url,
            )
            return await self.pull_requests.handle(hook, scm_config)

        return await self.push(hook, scm_config)

    async def push(self, hook: ParsedHook, scm_config: ScmConfig) -> WebhookResponse:
        logger.info("[%s] Push for %s", hook.hook_id, hook.full_checkout_url)

        pipelines = await self.fanout.resolve(scm_config, hook.branch, "commit")
        if not pipelines:
            logger.info(
                "[%s] Skipping since pipeline %s does not exist",
                hook.hook_id,
                hook.full_checkout_url,
            )
            return WebhookResponse(status_code=204)

        cause = EventCause(
            kind="commit",
            branch=hook.branch,
            sha=hook.sha,
            username=hook.username,
            scm_context=hook.scm_context,
            token=scm_config.token,
            changed_files=hook.changed_files,
        )
        events = await self.batch_creator.create_events(pipelines, cause)
        for event in events:
            logger.info("[%s] Event %d started", hook.hook_id, event.id)

        if not events:
            return WebhookResponse(status_code=204)
        return WebhookResponse(status_code=201, events=[e.id for e in events])


# ── HTTP Endpoint ────────────────────────────────────────────────────────────

router = APIRouter()

# Set during server startup (see server.py)
_event_router: WebhookEventRouter | None = None


def configure(event_router: WebhookEventRouter) -> None:
    global _event_router
    _event_router = event_router


@router.post("/webhooks")
async def handle_webhook(request: Request) -> Response:
    """Route one SCM delivery. Errors propagate to the app's handlers."""
    if _event_router is None:
        raise RuntimeError("webhook endpoint not configured")

    body = await request.body()
    result = await _event_router.route(request.headers, body)

    if result.status_code == 204:
        return Response(status_code=204)
    return JSONResponse(
        status_code=result.status_code,
        content={"events": result.events},
    )
