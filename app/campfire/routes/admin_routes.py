"""
Admin API routes.

Every endpoint except ``/admin/status`` requires a bearer token whose
profile is flagged ``is_admin``.

Endpoints:
    GET   /api/admin/status                              : caller's admin flag
    PATCH /api/admin/game-state                          : force phase / pointers
    POST  /api/admin/episodes/{episode_id}/synthesize    : preview options
    POST  /api/admin/episodes/{episode_id}/open-voting   : write options, start VOTE
    POST  /api/admin/episodes/{episode_id}/simulate      : synthetic submissions
    GET   /api/admin/episodes/{episode_id}/submission-stats
    GET   /api/admin/episodes/{episode_id}/option-stats
    POST  /api/admin/episodes/publish                    : publish next episode
    POST  /api/admin/campaign/start                      : bible + S1E1
    POST  /api/admin/campaign/reset                      : wipe the campaign
    GET   /api/admin/series-bible                        : active story bible
    POST  /api/admin/campaign/premises                   : premise ideas
    POST  /api/admin/campaign/ignite                     : generated bible + S1E1
    POST  /api/admin/episodes/continuity                 : drafting header
    POST  /api/admin/episodes/beat-sheet                 : five-scene blueprint
    POST  /api/admin/episodes/script                     : episode prose
    POST  /api/admin/episodes/narration                  : TTS-ready rewrite
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from pymongo.database import Database

from campfire.auth.tokens import get_current_user_id, require_admin
from campfire.database.connection import get_db
from campfire.database.profile_repository import ProfileRepository
from campfire.errors import ConfigurationError
from campfire.game.admin import AdminManager
from campfire.game.story_manager import StoryManager
from campfire.game.text_generation import TextGenerator, get_text_generator
from commons import limiter
from configs.config import get_config
from security import safe_error_response, validate_record_id

logger = logging.getLogger(__name__)

cfg = get_config()

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ── Pydantic request bodies ─────────────────────────────────────────────


class GameStateRequest(BaseModel):
    current_phase: Optional[str] = None
    duration_minutes: Optional[float] = None
    current_episode_id: Optional[str] = None
    current_series_bible_id: Optional[str] = None


class OptionDraft(BaseModel):
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    source_submission_ids: Optional[List[str]] = None


class OpenVotingRequest(BaseModel):
    options: List[OptionDraft]
    duration_minutes: Optional[float] = None


class PublishEpisodeRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    narrative_text: str = Field(..., min_length=1)
    season_num: int = Field(..., ge=1)
    episode_num: int = Field(..., ge=1)
    audio_url: Optional[str] = None
    winning_option_id: Optional[str] = None


class StartCampaignRequest(BaseModel):
    title: str = Field(..., max_length=200)
    genre: str = Field(..., max_length=100)
    tone: str = Field(..., max_length=100)
    premise: str = Field(..., max_length=4000)
    narrative_text: str
    episode_title: Optional[str] = None
    audio_url: Optional[str] = None
    bible_json: Optional[Dict[str, Any]] = None


class ResetCampaignRequest(BaseModel):
    keep_bible: bool = False


class SimulateRequest(BaseModel):
    count: int = Field(..., ge=1, le=cfg.SIMULATION_MAX_TOTAL)


def _unwrap(success: bool, response: dict, status_code: int = 400) -> dict:
    if success:
        return response
    raise HTTPException(
        status_code=status_code,
        detail=response.get("message", "Request failed"),
    )


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
@limiter.limit("60/minute")
async def admin_status(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
) -> dict:
    """Report whether the caller is an admin."""
    return {
        "user_id": user_id,
        "is_admin": ProfileRepository(db).is_admin(user_id),
    }


@router.patch("/game-state")
@limiter.limit("30/minute")
async def update_game_state(
    request: Request,
    body: GameStateRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    """Force the phase and/or the episode and bible pointers."""
    fields = body.model_fields_set
    pointers = {}
    if "current_episode_id" in fields:
        pointers["episode_id"] = body.current_episode_id
    if "current_series_bible_id" in fields:
        pointers["series_bible_id"] = body.current_series_bible_id
    try:
        return _unwrap(*AdminManager(db).set_phase(
            phase=body.current_phase,
            duration_minutes=body.duration_minutes,
            **pointers,
        ))
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="update_game_state")


@router.post("/episodes/{episode_id}/synthesize")
@limiter.limit("10/minute")
def synthesize_options(
    request: Request,
    episode_id: str,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> dict:
    """Preview three synthesized options without saving them."""
    validate_record_id(episode_id, "episode ID")
    try:
        return _unwrap(
            *AdminManager(db, generate=generate).synthesize_preview(episode_id),
            status_code=502,
        )
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="synthesize_options")


@router.post("/episodes/{episode_id}/open-voting")
@limiter.limit("10/minute")
async def open_voting(
    request: Request,
    episode_id: str,
    body: OpenVotingRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    """Replace the episode's options and start the VOTE phase."""
    validate_record_id(episode_id, "episode ID")
    try:
        return _unwrap(*AdminManager(db).open_voting(
            episode_id,
            [o.model_dump() for o in body.options],
            body.duration_minutes,
        ))
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="open_voting")


@router.post("/episodes/{episode_id}/simulate")
@limiter.limit("5/minute")
def simulate_submissions(
    request: Request,
    episode_id: str,
    body: SimulateRequest,
    admin_id: str = Depends(require_admin),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> dict:
    """Insert synthetic suggestions authored by the calling admin."""
    validate_record_id(episode_id, "episode ID")
    try:
        return _unwrap(*AdminManager(db, generate=generate).simulate_submissions(
            admin_id, episode_id, body.count
        ))
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="simulate_submissions")


@router.get("/episodes/{episode_id}/submission-stats")
@limiter.limit("60/minute")
async def submission_stats(
    request: Request,
    episode_id: str,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    validate_record_id(episode_id, "episode ID")
    try:
        return _unwrap(*AdminManager(db).submission_stats(episode_id))
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="submission_stats")


@router.get("/episodes/{episode_id}/option-stats")
@limiter.limit("60/minute")
async def option_stats(
    request: Request,
    episode_id: str,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    validate_record_id(episode_id, "episode ID")
    try:
        return _unwrap(*AdminManager(db).option_stats(episode_id))
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="option_stats")


@router.post("/episodes/publish")
@limiter.limit("10/minute")
async def publish_episode(
    request: Request,
    body: PublishEpisodeRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    """Publish the next episode and return the game to LISTEN."""
    try:
        return _unwrap(*AdminManager(db).publish_next_episode(
            title=body.title,
            narrative_text=body.narrative_text,
            season_num=body.season_num,
            episode_num=body.episode_num,
            audio_url=body.audio_url,
            winning_option_id=body.winning_option_id,
        ), status_code=409)
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="publish_episode")


@router.post("/campaign/start")
@limiter.limit("5/minute")
async def start_campaign(
    request: Request,
    body: StartCampaignRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    """Register a series bible with its first episode."""
    try:
        return _unwrap(*AdminManager(db).start_campaign(
            title=body.title,
            genre=body.genre,
            tone=body.tone,
            premise=body.premise,
            narrative_text=body.narrative_text,
            bible_json=body.bible_json,
            episode_title=body.episode_title,
            audio_url=body.audio_url,
        ))
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="start_campaign")


@router.post("/campaign/reset")
@limiter.limit("5/minute")
async def reset_campaign(
    request: Request,
    body: ResetCampaignRequest,
    admin_id: str = Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    """Delete every round, episode and (optionally) bible."""
    try:
        logger.warning("Campaign reset requested by %s", admin_id)
        return _unwrap(*AdminManager(db).reset_campaign(keep_bible=body.keep_bible))
    except HTTPException:
        raise
    except Exception as exc:
        safe_error_response(exc, context="reset_campaign")


# ── Story genesis and drafting (blocking Gemini calls run in the threadpool) ─


class PremisesRequest(BaseModel):
    genre: str = Field(..., max_length=100)
    tone: str = Field(..., max_length=100)
    title: Optional[str] = Field(None, max_length=200)


class IgniteCampaignRequest(BaseModel):
    title: str = Field(..., max_length=200)
    genre: str = Field(..., max_length=100)
    tone: str = Field(..., max_length=100)
    premise: str = Field(..., max_length=4000)


class ContinuityRequest(BaseModel):
    winning_title: str = Field(..., min_length=1, max_length=200)
    winning_description: str = Field(..., min_length=1, max_length=2000)
    winning_option_id: Optional[str] = None


class BeatSheetRequest(BaseModel):
    winning_text: str = Field(..., min_length=1, max_length=4000)
    context: str = ""
    contributors: List[str] = []


class ScriptRequest(BaseModel):
    beat_sheet: str = Field(..., min_length=1)
    context: Optional[str] = None


class NarrationRequest(BaseModel):
    prose: str = Field(..., min_length=1)
    context: Optional[str] = None


def _run_story(context: str, call) -> dict:
    try:
        return _unwrap(*call(), status_code=502)
    except (HTTPException, ConfigurationError):
        raise
    except Exception as exc:
        safe_error_response(exc, context=context)


@router.get("/series-bible")
@limiter.limit("60/minute")
def active_series_bible(
    request: Request,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    """The bible the game points at, or the newest one."""
    return _run_story("active_series_bible", StoryManager(db).active_series_bible)


@router.post("/campaign/premises")
@limiter.limit("10/minute")
def oracle_premises(
    request: Request,
    body: PremisesRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> dict:
    """Three premise ideas for a genre and tone."""
    story = StoryManager(db, generate=generate)
    return _run_story(
        "oracle_premises",
        lambda: story.oracle_premises(body.genre, body.tone, body.title),
    )


@router.post("/campaign/ignite")
@limiter.limit("5/minute")
def ignite_campaign(
    request: Request,
    body: IgniteCampaignRequest,
    admin_id: str = Depends(require_admin),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> dict:
    """Generate the story bible and Episode 1, then start the campaign."""
    logger.info("Campaign ignition requested by %s", admin_id)
    story = StoryManager(db, generate=generate)
    return _run_story(
        "ignite_campaign",
        lambda: story.ignite_campaign(body.title, body.genre, body.tone, body.premise),
    )


@router.post("/episodes/continuity")
@limiter.limit("30/minute")
def continuity_header(
    request: Request,
    body: ContinuityRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
) -> dict:
    """Bible, canon rules, winner and recent canon as one prompt header."""
    if body.winning_option_id:
        validate_record_id(body.winning_option_id, "option ID")
    story = StoryManager(db)
    return _run_story(
        "continuity_header",
        lambda: story.continuity_header(
            body.winning_title, body.winning_description, body.winning_option_id
        ),
    )


@router.post("/episodes/beat-sheet")
@limiter.limit("10/minute")
def draft_beat_sheet(
    request: Request,
    body: BeatSheetRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> dict:
    story = StoryManager(db, generate=generate)
    return _run_story(
        "draft_beat_sheet",
        lambda: story.draft_beat_sheet(body.winning_text, body.context, body.contributors),
    )


@router.post("/episodes/script")
@limiter.limit("5/minute")
def draft_script(
    request: Request,
    body: ScriptRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> dict:
    """Draft episode prose scene by scene from a beat sheet."""
    story = StoryManager(db, generate=generate)
    return _run_story(
        "draft_script", lambda: story.draft_script(body.beat_sheet, body.context)
    )


@router.post("/episodes/narration")
@limiter.limit("10/minute")
def polish_narration(
    request: Request,
    body: NarrationRequest,
    _=Depends(require_admin),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> dict:
    """Rewrite prose for text-to-speech pacing."""
    story = StoryManager(db, generate=generate)
    return _run_story(
        "polish_narration", lambda: story.polish_narration(body.prose, body.context)
    )
