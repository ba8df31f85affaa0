"""Agent profile endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from packages.arena_core.match import profile_public

from ..storage.profiles import get_profile, list_profiles


logger = logging.getLogger("arena_api.agents")

router = APIRouter(prefix="/api/v1/agents", tags=["agents"])


@router.get("")
def list_agents_endpoint() -> dict[str, Any]:
    agents = [profile_public(p) for p in list_profiles()]
    return {"count": len(agents), "agents": agents}


@router.get("/{agent_id}")
def get_agent_endpoint(agent_id: str) -> dict[str, Any]:
    profile = get_profile(agent_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Agent not found: {agent_id}")
    return {"agent": profile_public(profile)}
