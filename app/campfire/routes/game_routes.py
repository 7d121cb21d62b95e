"""
Campfire participant API routes.

Endpoints:
    GET  /api/game                                : public game view
    POST /api/game/submissions                    : submit an idea
    POST /api/game/submissions/{submission_id}/stoke: bump a submission's heat
    POST /api/game/vote                           : vote for a path option
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from pymongo.database import Database

from campfire.auth.tokens import get_current_user_id
from campfire.database.connection import get_db
from campfire.game.manager import GameManager
from commons import limiter
from configs.config import get_config
from security import safe_error_response, validate_record_id

logger = logging.getLogger(__name__)

cfg = get_config()

router = APIRouter(prefix="/api", tags=["game"])


# ── Pydantic request bodies ─────────────────────────────────────────────


class SubmitIdeaRequest(BaseModel):
    content_text: str = Field(
        ..., min_length=1, max_length=cfg.SUBMISSION_MAX_LENGTH,
        description="What should happen next",
    )


class VoteRequest(BaseModel):
    option_id: str = Field(
        ..., min_length=36, max_length=36,
        pattern=r"^[0-9a-f\-]{36}$",
    )


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/game")
@limiter.limit("200/minute")
async def get_game(
    request: Request,
    limit: int = Query(None, ge=1, le=200),
    db: Database = Depends(get_db),
) -> dict:
    """Current phase, timer, episode, options with live counts, hot ideas."""
    try:
        success, response = GameManager(db).get_game_info(limit)
        if success:
            return response
        raise HTTPException(
            status_code=404,
            detail=response.get("message", "Game not found"),
        )
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="get_game")


@router.post("/game/submissions")
@limiter.limit("30/minute")
async def submit_idea(
    request: Request,
    body: SubmitIdeaRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
) -> dict:
    """Submit a suggestion while the SUBMIT phase is open."""
    try:
        success, response = GameManager(db).submit_idea(
            user_id, body.content_text
        )
        if success:
            return response
        raise HTTPException(
            status_code=400,
            detail=response.get("message", "Failed to submit"),
        )
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="submit_idea")


@router.post("/game/submissions/{submission_id}/stoke")
@limiter.limit("120/minute")
async def stoke_submission(
    request: Request,
    submission_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
) -> dict:
    """Add heat to a submission."""
    validate_record_id(submission_id, "submission ID")
    try:
        success, response = GameManager(db).boost_submission(submission_id)
        if success:
            return response
        status_code = 404 if "not found" in response["message"] else 409
        raise HTTPException(status_code=status_code, detail=response["message"])
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="stoke_submission")


@router.post("/game/vote")
@limiter.limit("60/minute")
async def cast_vote(
    request: Request,
    body: VoteRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
) -> dict:
    """Vote for one of the current episode's path options."""
    try:
        success, response = GameManager(db).cast_vote(user_id, body.option_id)
        if success:
            logger.info("Vote registered for option %s", body.option_id)
            return response
        raise HTTPException(
            status_code=400,
            detail=response.get("message", "Failed to vote"),
        )
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="cast_vote")
