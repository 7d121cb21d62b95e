"""
Scheduler API routes.

Endpoints:
    GET  /api/cron/tick: advance the game clock once
    POST /api/cron/tick: same, for schedulers that only POST

Both require the shared secret in ``X-Cron-Secret``. Failures come back
as ``{"ok": false, "error": ...}``: 401 for a bad secret, 500 otherwise.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pymongo.database import Database

from campfire.database.game_state_repository import GameStateStore
from campfire.database.connection import get_db
from campfire.database.round_repository import RoundRepository
from campfire.game.option_synthesizer import OptionSynthesizer
from campfire.game.text_generation import TextGenerator, get_text_generator
from campfire.game.transition_engine import TransitionEngine
from security import require_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def build_engine(db: Database, generate: TextGenerator) -> TransitionEngine:
    store = GameStateStore(db)
    rounds = RoundRepository(db, store.columns)
    return TransitionEngine(store, rounds, OptionSynthesizer(rounds, generate=generate))


@router.api_route("/tick", methods=["GET", "POST"])
def tick(
    request: Request,
    _=Depends(require_cron_secret),
    db: Database = Depends(get_db),
    generate: TextGenerator = Depends(get_text_generator),
) -> JSONResponse:
    """Run one tick of the phase state machine."""
    success, result = build_engine(db, generate).run_tick()
    if success:
        logger.info("Tick: %s", result["status"])
    return JSONResponse(
        status_code=200 if success else 500,
        content=jsonable_encoder(result),
    )
