"""Build API — ``PUT /builds/{id}``."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from conductor.auth import require_requester
from conductor.builds import BuildLifecycleManager
from conductor.models import BuildUpdate, Requester

logger = logging.getLogger(__name__)

router = APIRouter()

# Set during server startup (see server.py)
_lifecycle: BuildLifecycleManager | None = None


def configure(lifecycle: BuildLifecycleManager) -> None:
    global _lifecycle
    _lifecycle = lifecycle


@router.put("/builds/{build_id}")
async def update_build(
    build_id: int,
    update: BuildUpdate,
    requester: Requester = Depends(require_requester),
) -> dict:
    """Update a build's status, message, meta or stats."""
    if _lifecycle is None:
        raise RuntimeError("build API not configured")

    build = await _lifecycle.update_build(build_id, requester, update)
    return build.model_dump(mode="json")
