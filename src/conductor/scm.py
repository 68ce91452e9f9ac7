"""SCM collaborator for Conductor.

``ScmClient`` is the narrow interface the orchestration core uses for
everything it needs from source control. ``GitHubScm`` implements it over
the GitHub REST API with httpx: hook parsing with HMAC-SHA256 signature
verification, branch and commit lookups, PR metadata, changed files,
repository permissions and the pipeline definition file.

SCM uris have the form ``<host>:<repo_id>:<branch>``. Calls address the
repository by numeric id (``/repositories/{id}``) so renames don't break
registered pipelines.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

import httpx
import yaml
from pydantic import ValidationError

from conductor.errors import BadRequestError, UnauthorizedError
from conductor.models import ParsedHook, Permissions, ScmConfig, ScmUri
from conductor.workflow import PipelineDefinition

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

# git@github.com:owner/repo.git#branch or https://github.com/owner/repo.git#branch
_CHECKOUT_URL_RE = re.compile(
    r"^(?:(?:https?|git)://|git@)(?P<host>[^/:]+)[/:](?P<owner>[^/]+)/(?P<repo>[^/#]+?)(?:\.git)?"
    r"(?:#(?P<branch>.+))?$"
)

_PR_ACTIONS = {
    "opened": "opened",
    "reopened": "reopened",
    "synchronize": "synchronized",
    "closed": "closed",
}


class ScmClient(Protocol):
    """What the orchestration core needs from source control."""

    async def parse_hook(self, headers: Mapping[str, str], body: bytes) -> ParsedHook | None: ...

    async def parse_url(self, checkout_url: str, token: str, scm_context: str) -> str: ...

    async def get_branch_list(self, config: ScmConfig) -> list[str]: ...

    async def get_commit_sha(self, config: ScmConfig) -> str: ...

    async def get_pr_info(self, config: ScmConfig) -> dict[str, Any]: ...

    async def get_changed_files(self, hook: ParsedHook, payload: dict, token: str) -> list[str]: ...

    async def get_permissions(self, scm_uri: str, token: str) -> Permissions: ...

    async def get_open_pull_requests(self, config: ScmConfig) -> list[int]: ...

    async def get_pipeline_definition(self, config: ScmConfig) -> PipelineDefinition: ...

    def get_display_name(self, scm_context: str) -> str: ...


class GitHubScm:
    """Async GitHub API client implementing ``ScmClient``."""

    def __init__(
        self,
        *,
        scm_context: str = "github:github.com",
        display_name: str = "GitHub",
        api_url: str = "https://api.github.com",
        host: str = "github.com",
        config_path: str = "conductor.yaml",
        webhook_secret: str | None = None,
    ):
        self.scm_context = scm_context
        self.display_name = display_name
        self.api_url = api_url
        self.host = host
        self.config_path = config_path
        self.webhook_secret = webhook_secret

        # Rate limit tracking
        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "Conductor/0.1.0",
            },
            timeout=30.0,
        )
        logger.info("GitHub SCM client started (%s)", self.api_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub SCM client not started")
        return self._client

    def get_display_name(self, scm_context: str) -> str:
        return self.display_name

    # ── Webhook Parsing ──────────────────────────────────────────────────

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify HMAC-SHA256 webhook signature.

        Args:
            payload: Raw request body bytes.
            signature: X-Hub-Signature-256 header value.
        """
        if not self.webhook_secret:
            logger.warning("No webhook secret configured — skipping signature verification")
            return True

        expected = (
            "sha256="
            + hmac.new(
                self.webhook_secret.encode(),
                payload,
                hashlib.sha256,
            ).hexdigest()
        )

        return hmac.compare_digest(expected, signature)

    async def parse_hook(self, headers: Mapping[str, str], body: bytes) -> ParsedHook | None:
        """Normalize a GitHub delivery into a ``ParsedHook``.

        Returns None for event types and actions Conductor does not act on
        (pings, tag pushes, branch deletions, labels, ...).
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        event_type = lowered.get("x-github-event", "")
        hook_id = lowered.get("x-github-delivery", "")

        if not self.verify_webhook_signature(body, lowered.get("x-hub-signature-256", "")):
            raise UnauthorizedError("Invalid webhook signature")

        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            raise BadRequestError("Webhook payload is not valid JSON") from None

        if event_type == "push":
            return self._parse_push(hook_id, payload)
        if event_type == "pull_request":
            return self._parse_pull_request(hook_id, payload)
        return None

    def _parse_push(self, hook_id: str, payload: dict) -> ParsedHook | None:
        ref = payload.get("ref", "")
        if not ref.startswith("refs/heads/") or payload.get("deleted"):
            return None

        repo = payload.get("repository") or {}
        head_commit = payload.get("head_commit") or {}
        return ParsedHook(
            hook_id=hook_id,
            type="repo",
            action="push",
            username=(payload.get("sender") or {}).get("login", ""),
            scm_context=self.scm_context,
            checkout_url=repo.get("clone_url") or repo.get("ssh_url", ""),
            branch=ref[len("refs/heads/") :],
            sha=payload.get("after", ""),
            last_commit_message=head_commit.get("message", ""),
        )

    def _parse_pull_request(self, hook_id: str, payload: dict) -> ParsedHook | None:
        action = _PR_ACTIONS.get(payload.get("action", ""))
        if action is None:
            return None

        pr = payload.get("pull_request") or {}
        base = pr.get("base") or {}
        head = pr.get("head") or {}
        base_repo = base.get("repo") or {}
        head_repo = head.get("repo") or {}
        pr_num = pr.get("number") or payload.get("number")
        pr_source = "branch" if head_repo.get("id") == base_repo.get("id") else "fork"

        return ParsedHook(
            hook_id=hook_id,
            type="pr",
            action=action,
            username=(payload.get("sender") or {}).get("login", ""),
            scm_context=self.scm_context,
            checkout_url=base_repo.get("clone_url") or base_repo.get("ssh_url", ""),
            branch=base.get("ref", ""),
            sha=head.get("sha", ""),
            pr_num=pr_num,
            pr_ref=f"pull/{pr_num}/merge",
            pr_source=pr_source,
        )

    # ── Repository Lookups ───────────────────────────────────────────────

    async def parse_url(self, checkout_url: str, token: str, scm_context: str) -> str:
        """Resolve ``<checkout url>#<branch>`` to ``<host>:<repo_id>:<branch>``."""
        match = _CHECKOUT_URL_RE.match(checkout_url)
        if not match:
            raise BadRequestError(f"Invalid checkout url: {checkout_url}")

        owner, repo = match.group("owner"), match.group("repo")
        resp = await self._request("GET", f"/repos/{owner}/{repo}", token=token)
        data = resp.json()
        branch = match.group("branch") or data.get("default_branch", "main")
        return str(ScmUri(host=match.group("host"), repo_id=str(data["id"]), branch=branch))

    async def get_branch_list(self, config: ScmConfig) -> list[str]:
        """All branch names of the repository, following pagination."""
        uri = ScmUri.parse(config.scm_uri)
        branches = await self._get_all_pages(f"/repositories/{uri.repo_id}/branches", config.token)
        return [b["name"] for b in branches]

    async def get_commit_sha(self, config: ScmConfig) -> str:
        """Head sha of the PR when ``config.pr_num`` is set, else of the uri's branch."""
        uri = ScmUri.parse(config.scm_uri)
        if config.pr_num:
            resp = await self._request(
                "GET", f"/repositories/{uri.repo_id}/pulls/{config.pr_num}", token=config.token
            )
            return resp.json()["head"]["sha"]

        resp = await self._request(
            "GET", f"/repositories/{uri.repo_id}/commits/{uri.branch}", token=config.token
        )
        return resp.json()["sha"]

    async def get_pr_info(self, config: ScmConfig) -> dict[str, Any]:
        uri = ScmUri.parse(config.scm_uri)
        resp = await self._request(
            "GET", f"/repositories/{uri.repo_id}/pulls/{config.pr_num}", token=config.token
        )
        pr = resp.json()
        return {
            "name": f"PR-{pr['number']}",
            "ref": f"pull/{pr['number']}/merge",
            "sha": pr["head"]["sha"],
            "url": pr.get("html_url", ""),
            "username": (pr.get("user") or {}).get("login", ""),
            "title": pr.get("title", ""),
            "base_branch": (pr.get("base") or {}).get("ref", ""),
        }

    async def get_changed_files(self, hook: ParsedHook, payload: dict, token: str) -> list[str]:
        """Files touched by a push (from the payload) or a PR (from the API)."""
        if hook.type == "repo":
            files: list[str] = []
            for commit in payload.get("commits", []):
                for key in ("added", "modified", "removed"):
                    for path in commit.get(key, []):
                        if path not in files:
                            files.append(path)
            return files

        repo_id = (payload.get("repository") or {}).get("id")
        files = await self._get_all_pages(
            f"/repositories/{repo_id}/pulls/{hook.pr_num}/files", token
        )
        return [f["filename"] for f in files]

    async def get_permissions(self, scm_uri: str, token: str) -> Permissions:
        uri = ScmUri.parse(scm_uri)
        resp = await self._request("GET", f"/repositories/{uri.repo_id}", token=token)
        return Permissions(**(resp.json().get("permissions") or {}))

    async def get_open_pull_requests(self, config: ScmConfig) -> list[int]:
        """Numbers of open PRs targeting the uri's branch."""
        uri = ScmUri.parse(config.scm_uri)
        pulls = await self._get_all_pages(
            f"/repositories/{uri.repo_id}/pulls",
            config.token,
            params={"state": "open", "base": uri.branch},
        )
        return [pr["number"] for pr in pulls]

    async def get_pipeline_definition(self, config: ScmConfig) -> PipelineDefinition:
        """Read and parse the pipeline definition file from the uri's branch."""
        uri = ScmUri.parse(config.scm_uri)
        try:
            resp = await self._request(
                "GET",
                f"/repositories/{uri.repo_id}/contents/{self.config_path}",
                token=config.token,
                params={"ref": uri.branch},
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.warning("No %s on %s, using empty definition", self.config_path, uri)
                return PipelineDefinition()
            raise

        content = base64.b64decode(resp.json().get("content", "")).decode()
        try:
            raw = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise BadRequestError(f"Invalid {self.config_path} on {uri}: {e}") from None
        if not isinstance(raw, dict):
            raise BadRequestError(f"Invalid {self.config_path} on {uri}: expected a mapping")
        try:
            return PipelineDefinition(**raw)
        except ValidationError as e:
            raise BadRequestError(
                f"Invalid {self.config_path} on {uri}: {e.error_count()} validation error(s)"
            ) from None

    # ── Requests & Rate Limits ───────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Track rate limits from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _get_all_pages(
        self, path: str, token: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """GET a list endpoint page by page until a short page comes back."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            resp = await self._request(
                "GET",
                path,
                token=token,
                params={**(params or {}), "per_page": PAGE_SIZE, "page": page},
            )
            batch = resp.json()
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                return items
            page += 1

    async def _request(self, method: str, path: str, *, token: str, **kwargs) -> httpx.Response:
        """Authenticated request as the given user token."""
        if self._rate_limit_remaining <= 0:
            wait = max(0, self._rate_limit_reset - time.time()) + 1
            logger.warning("Rate limit exhausted — sleeping %.1fs until reset", wait)
            await asyncio.sleep(wait)
            self._rate_limit_remaining = 100  # optimistic reset

        headers = {"Authorization": f"token {token}"}
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp
