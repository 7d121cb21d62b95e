"""
Participant actions for the Campfire game.

Submitting ideas, stoking a submission's heat, casting votes and reading
the public game view. Every gate is checked against the live game state
at the moment of the write; nothing is cached between calls.
"""

import logging
from typing import Dict, Optional, Tuple

from pymongo.database import Database

from campfire.database.episode_repository import EpisodeRepository
from campfire.database.game_state_repository import GameStateStore
from campfire.database.round_repository import RoundRepository
from campfire.errors import ConcurrentUpdateError
from campfire.game.constants import (
    MSG_ALREADY_VOTED,
    MSG_EMPTY_SUBMISSION,
    MSG_NO_EPISODE,
    MSG_NO_GAME_STATE,
    MSG_SUBMISSION_NOT_FOUND,
    MSG_SUBMIT_CLOSED,
    MSG_SUBMIT_EXPIRED,
    MSG_VOTE_INVALID,
    MSG_VOTING_CLOSED,
    MSG_VOTING_NOT_OPEN,
    PHASE_SUBMIT,
    PHASE_VOTE,
)
from campfire.game.tally import rank, tally
from commons import isoformat_or_none, utcnow
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()


def _failure(message: str) -> Tuple[bool, Dict]:
    return False, {"success": False, "message": message}


def _serialize_submission(submission: Dict) -> Dict:
    return {
        "id": submission["id"],
        "user_id": submission.get("user_id"),
        "content_text": submission.get("content_text"),
        "heat": int(submission.get("heat") or 0),
        "is_synthetic": bool(submission.get("is_synthetic")),
        "created_at": isoformat_or_none(submission.get("created_at")),
    }


class GameManager:
    """Participant-facing game operations bound to one database handle."""

    def __init__(self, db: Database) -> None:
        self.state = GameStateStore(db)
        self.rounds = RoundRepository(db)
        self.episodes = EpisodeRepository(db)

    # ── Submissions ──────────────────────────────────────────────────────

    def submit_idea(self, user_id: str, content_text: str) -> Tuple[bool, Dict]:
        """Add a suggestion to the current episode while SUBMIT is open."""
        text = (content_text or "").strip()
        if not text:
            return _failure(MSG_EMPTY_SUBMISSION)
        if len(text) > cfg.SUBMISSION_MAX_LENGTH:
            return _failure(
                f"Submissions are limited to {cfg.SUBMISSION_MAX_LENGTH} characters."
            )

        state = self.state.read()
        if state is None:
            return _failure(MSG_NO_GAME_STATE)
        if state["current_phase"] != PHASE_SUBMIT:
            return _failure(MSG_SUBMIT_CLOSED)
        expiry = state["phase_expiry"]
        if expiry is not None and expiry <= utcnow():
            return _failure(MSG_SUBMIT_EXPIRED)
        episode_id = state["current_episode_id"]
        if not episode_id:
            return _failure(MSG_NO_EPISODE)

        submission = self.rounds.create_submission(episode_id, user_id, text)
        return True, {
            "success": True,
            "message": "Submission received",
            "submission": _serialize_submission(submission),
        }

    def boost_submission(self, submission_id: str) -> Tuple[bool, Dict]:
        """Stoke a submission: heat + 1, retried under contention."""
        try:
            heat = self.rounds.bump_heat(submission_id)
        except ConcurrentUpdateError as exc:
            logger.warning("Heat update gave up: %s", exc)
            return _failure("The fire is crowded right now. Try again.")
        if heat is None:
            return _failure(MSG_SUBMISSION_NOT_FOUND)
        return True, {
            "success": True,
            "message": "Submission stoked",
            "submission_id": submission_id,
            "heat": heat,
        }

    # ── Voting ───────────────────────────────────────────────────────────

    def cast_vote(self, user_id: str, option_id: str) -> Tuple[bool, Dict]:
        """
        Record one vote. Accepted only during VOTE, before the expiry,
        for an option belonging to the current episode.
        """
        state = self.state.read()
        if state is None:
            return _failure(MSG_NO_GAME_STATE)
        if state["current_phase"] != PHASE_VOTE:
            return _failure(MSG_VOTING_NOT_OPEN)
        expiry = state["phase_expiry"]
        if expiry is not None and expiry <= utcnow():
            return _failure(MSG_VOTING_CLOSED)

        option = self.rounds.get_option(option_id)
        if option is None or option["episode_id"] != state["current_episode_id"]:
            return _failure(MSG_VOTE_INVALID)

        if not self.rounds.insert_vote(user_id, option_id):
            return _failure(MSG_ALREADY_VOTED)

        logger.info("Vote by %s recorded for option %s", user_id, option_id)
        return True, {
            "success": True,
            "message": "Vote recorded",
            "option_id": option_id,
        }

    # ── Read model ───────────────────────────────────────────────────────

    def get_game_info(self, limit: Optional[int] = None) -> Tuple[bool, Dict]:
        """Phase, timer, current episode, options with counts and hot ideas."""
        state = self.state.read()
        if state is None:
            return _failure(MSG_NO_GAME_STATE)

        episode_id = state["current_episode_id"]
        episode = self.episodes.get_episode(episode_id) if episode_id else None

        options, submissions = [], []
        if episode_id:
            raw_options = self.rounds.list_options(episode_id)
            counts = tally(self.rounds, [o["id"] for o in raw_options])
            options = [
                {
                    "id": o["id"],
                    "title": o["title"],
                    "description": o["description"],
                    "vote_count": counts[o["id"]],
                }
                for o in raw_options
            ]
            recent = self.rounds.recent_submissions(
                episode_id, limit or cfg.RECENT_SUBMISSIONS_LIMIT
            )
            hottest = rank(
                recent, {s["id"]: int(s.get("heat") or 0) for s in recent}
            )
            submissions = [_serialize_submission(s) for s in hottest]

        return True, {
            "success": True,
            "phase": state["current_phase"],
            "phase_expiry": isoformat_or_none(state["phase_expiry"]),
            "is_transitioning": state["is_transitioning"],
            "episode": (
                {
                    "id": episode["id"],
                    "title": episode["title"],
                    "narrative_text": episode["narrative_text"],
                    "audio_url": episode.get("audio_url"),
                    "season_num": episode["season_num"],
                    "episode_num": episode["episode_num"],
                    "credited_authors": episode.get("credited_authors", []),
                }
                if episode else None
            ),
            "options": options,
            "submissions": submissions,
        }
