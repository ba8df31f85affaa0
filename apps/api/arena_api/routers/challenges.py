"""Challenge (match) endpoints: create, accept, answer, query, history."""

from __future__ import annotations

from decimal import Decimal
import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from packages.arena_core.match import (
    ArenaError,
    InsufficientFunds,
    InvalidMatchType,
    MatchNotActive,
    MatchNotFound,
    MatchNotOpen,
    NotAParticipant,
    SelfChallenge,
    UnknownAgent,
)

from ..services.arena_engine import get_engine
from ..storage.match_history import list_results


logger = logging.getLogger("arena_api.challenges")

router = APIRouter(prefix="/api/v1/challenges", tags=["challenges"])


class CreateChallengeRequest(BaseModel):
    creator: str = Field(min_length=1, max_length=80)
    stake: Decimal = Field(default=Decimal("0.0001"), ge=0)
    type: str = Field(default="BEAM_BATTLE", max_length=40)


class AcceptChallengeRequest(BaseModel):
    challenge_id: str = Field(min_length=1, max_length=80)
    opponent: str = Field(min_length=1, max_length=80)


class SubmitAnswerRequest(BaseModel):
    agent_id: str = Field(min_length=1, max_length=80)
    answer: str = Field(max_length=200)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (InsufficientFunds, InvalidMatchType, SelfChallenge)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (MatchNotFound, UnknownAgent)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotAParticipant):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (MatchNotOpen, MatchNotActive)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@router.get("")
def list_challenges_endpoint(status: Optional[str] = Query(default=None)) -> dict[str, Any]:
    try:
        challenges = get_engine().list_matches(status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}") from exc
    return {"count": len(challenges), "challenges": challenges}


@router.get("/history")
def challenge_history_endpoint(
    agent_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    results = list_results(agent_id=agent_id, limit=limit)
    return {"count": len(results), "results": results}


@router.get("/{challenge_id}")
def get_challenge_endpoint(challenge_id: str) -> dict[str, Any]:
    try:
        return {"challenge": get_engine().get_match(challenge_id)}
    except (ArenaError, ValueError) as exc:
        raise _http_error(exc) from exc


@router.post("/create")
def create_challenge_endpoint(req: CreateChallengeRequest) -> dict[str, Any]:
    try:
        challenge = get_engine().create_match(req.creator, req.stake, req.type)
    except (ArenaError, ValueError) as exc:
        raise _http_error(exc) from exc
    logger.info("[CHALLENGE] %s created %s", req.creator, challenge["id"])
    return {"ok": True, "challenge": challenge}


@router.post("/accept")
def accept_challenge_endpoint(req: AcceptChallengeRequest) -> dict[str, Any]:
    try:
        challenge = get_engine().accept_match(req.challenge_id, req.opponent)
    except (ArenaError, ValueError) as exc:
        raise _http_error(exc) from exc
    logger.info("[CHALLENGE] %s accepted %s", req.opponent, req.challenge_id)
    return {"ok": True, "challenge": challenge}


@router.post("/{challenge_id}/answer")
def submit_answer_endpoint(challenge_id: str, req: SubmitAnswerRequest) -> dict[str, Any]:
    try:
        challenge = get_engine().submit_answer(challenge_id, req.agent_id, req.answer)
    except (ArenaError, ValueError) as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "challenge": challenge}
