"""
Administrative operations for the Campfire game.

Manual phase control, opening a vote with hand-edited options,
publishing the next episode, campaign start / reset, stats views and
the synthetic-suggestion simulator. Validation always happens before
the first write so a rejected request never leaves partial changes.
"""

import logging
import re
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from campfire.database.episode_repository import EpisodeRepository
from campfire.database.game_state_repository import GameStateStore
from campfire.database.profile_repository import ProfileRepository
from campfire.database.round_repository import RoundRepository
from campfire.errors import OptionSynthesisError
from campfire.game.constants import (
    MSG_CAMPAIGN_FIELDS,
    MSG_INVALID_PHASE,
    MSG_OPTION_FIELDS,
    MSG_THREE_OPTIONS,
    OPTIONS_PER_ROUND,
    PHASE_LISTEN,
    PHASE_VOTE,
    VALID_PHASES,
)
from campfire.game.continuity import truncate_for_prompt
from campfire.game.option_synthesizer import OptionSynthesizer
from campfire.game.schedule import PhaseSchedule, minutes_from
from campfire.game.tally import count_votes, rank, tally
from campfire.game.text_generation import (
    TextGenerator,
    generate_text_with_fallback,
    parse_json_array,
)
from campfire.game.transition_engine import normalize_options
from commons import isoformat_or_none, utcnow
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

_UNSET = object()

_LIST_MARKER_RE = re.compile(r"^(?:[-*]\s+|\d+[).]\s+)")

SIMULATION_CONTEXT_CHARS = 1600


# ── Suggestion simulator ─────────────────────────────────────────────────


def build_simulation_prompt(context: str, count: int) -> str:
    return (
        "You are a chaotic group of 20 RPG players.\n\n"
        f"The current story just ended with:\n{context}\n\n"
        f"Generate {count} distinct, short suggestions for what should "
        "happen next.\n"
        '- Range from "Logical" to "Insane" to "Troll".\n'
        "- Each suggestion should be 1 short sentence.\n"
        "- No numbering.\n\n"
        f"Return ONLY valid JSON: an array of exactly {count} strings."
    )


def parse_suggestions(raw: str) -> List[str]:
    """
    Read a JSON array of strings; if the output is not JSON, treat every
    non-empty line as one suggestion with list markers removed.
    """
    try:
        parsed = parse_json_array(raw)
        items = [item for item in parsed if isinstance(item, str)]
    except ValueError:
        items = [_LIST_MARKER_RE.sub("", line.strip()) for line in raw.splitlines()]
    return [item.strip() for item in items if item and item.strip()]


# ── Admin manager ────────────────────────────────────────────────────────


class AdminManager:
    """Admin-only game operations bound to one database handle."""

    def __init__(
        self,
        db: Database,
        generate: Optional[TextGenerator] = None,
        schedule: Optional[PhaseSchedule] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state = GameStateStore(db)
        self.rounds = RoundRepository(db, self.state.columns)
        self.episodes = EpisodeRepository(db, self.state.columns)
        self.profiles = ProfileRepository(db)
        self._generate = generate
        self._schedule = schedule or PhaseSchedule()
        self._sleep = sleep

    # ── Phase control ────────────────────────────────────────────────────

    def set_phase(
        self,
        phase: Optional[str] = None,
        duration_minutes=None,
        episode_id=_UNSET,
        series_bible_id=_UNSET,
    ) -> Tuple[bool, Dict]:
        """
        Force the game state. LISTEN clears the timer; any other phase
        gets ``duration_minutes`` (or its scheduled duration) from now.
        The episode and bible pointers change only when passed.
        """
        update: Dict = {}
        if phase is not None:
            if phase not in VALID_PHASES:
                return False, {"success": False, "message": MSG_INVALID_PHASE}
            update["current_phase"] = phase
            if phase == PHASE_LISTEN:
                update["phase_expiry"] = None
            elif duration_minutes is not None:
                minutes = minutes_from(duration_minutes, cfg.OPEN_VOTING_DEFAULT_MINUTES)
                update["phase_expiry"] = utcnow() + timedelta(minutes=minutes)
            else:
                update["phase_expiry"] = self._schedule.expiry_for(phase, utcnow())

        if episode_id is not _UNSET:
            update["current_episode_id"] = episode_id
        if series_bible_id is not _UNSET:
            update["current_series_bible_id"] = series_bible_id

        state = self.state.upsert(update)
        logger.info("Admin set game state: %s", update)
        return True, {
            "success": True,
            "message": "Game state updated",
            "state": serialize_state(state),
        }

    def open_voting(
        self, episode_id: str, options: List[Dict], duration_minutes=None
    ) -> Tuple[bool, Dict]:
        """Replace the episode's options and start VOTE with a fresh timer."""
        if len(options) != OPTIONS_PER_ROUND:
            return False, {"success": False, "message": MSG_THREE_OPTIONS}
        cleaned = normalize_options(options)
        if any(not o["title"] or not o["description"] for o in cleaned):
            return False, {"success": False, "message": MSG_OPTION_FIELDS}

        minutes = minutes_from(duration_minutes, cfg.OPEN_VOTING_DEFAULT_MINUTES)
        expiry = utcnow() + timedelta(minutes=minutes)

        written = self.rounds.replace_options(episode_id, cleaned)
        state = self.state.upsert({
            "current_phase": PHASE_VOTE,
            "current_episode_id": episode_id,
            "phase_expiry": expiry,
        })
        logger.info(
            "Voting opened for episode %s for %d minutes", episode_id, minutes
        )
        return True, {
            "success": True,
            "message": "Voting opened",
            "options": [_serialize_option(o) for o in written],
            "state": serialize_state(state),
        }

    # ── Episodes ─────────────────────────────────────────────────────────

    def source_author_ids(self, option_id: Optional[str]) -> List[str]:
        """Distinct authors of the submissions an option cites."""
        if not option_id:
            return []
        option = self.rounds.get_option(option_id)
        source_ids = [s for s in (option or {}).get("source_submission_ids") or [] if s]
        if not source_ids:
            return []

        user_ids: List[str] = []
        for submission in self.rounds.get_submissions_by_ids(source_ids):
            user_id = submission.get("user_id")
            if user_id and user_id not in user_ids:
                user_ids.append(user_id)
        return user_ids

    def credited_authors(self, winning_option_id: Optional[str]) -> List[Dict]:
        """Authors behind the winning option's source submissions."""
        user_ids = self.source_author_ids(winning_option_id)
        if not user_ids:
            return []
        usernames = {
            p["id"]: p.get("username") for p in self.profiles.get_profiles(user_ids)
        }
        return [
            {"id": user_id, "name": usernames.get(user_id) or user_id[:8]}
            for user_id in user_ids
        ]

    def publish_next_episode(
        self,
        title: str,
        narrative_text: str,
        season_num: int,
        episode_num: int,
        audio_url: Optional[str] = None,
        winning_option_id: Optional[str] = None,
    ) -> Tuple[bool, Dict]:
        """
        Insert the next episode and point the game at it in LISTEN.
        The episode is removed again if the game state cannot be updated.
        """
        credits = self.credited_authors(winning_option_id)
        try:
            episode = self.episodes.create_episode(
                title=title,
                narrative_text=narrative_text,
                season_num=season_num,
                episode_num=episode_num,
                audio_url=audio_url,
                credited_authors=credits,
            )
        except DuplicateKeyError:
            return False, {
                "success": False,
                "message": f"Episode S{season_num}E{episode_num} already exists.",
            }

        try:
            updated = self.state.force_update({
                "current_phase": PHASE_LISTEN,
                "current_episode_id": episode["id"],
                "phase_expiry": None,
            })
        except Exception:
            self.episodes.delete_episode(episode["id"])
            raise
        if not updated:
            self.episodes.delete_episode(episode["id"])
            return False, {
                "success": False,
                "message": "Game state not found; episode was not published.",
            }

        logger.info(
            "Published S%dE%d (%s) crediting %d author(s)",
            season_num, episode_num, episode["id"], len(credits),
        )
        return True, {
            "success": True,
            "message": "Episode published",
            "episode_id": episode["id"],
            "credited_authors": episode.get("credited_authors", []),
        }

    # ── Campaign lifecycle ───────────────────────────────────────────────

    def start_campaign(
        self,
        title: str,
        genre: str,
        tone: str,
        premise: str,
        narrative_text: str,
        bible_json: Optional[Dict] = None,
        episode_title: Optional[str] = None,
        audio_url: Optional[str] = None,
    ) -> Tuple[bool, Dict]:
        """Register a series bible plus S1E1 and point the game at them."""
        title, genre, tone, premise = (
            (title or "").strip(), (genre or "").strip(),
            (tone or "").strip(), (premise or "").strip(),
        )
        narrative_text = (narrative_text or "").strip()
        if not title or not genre or not tone or not premise:
            return False, {"success": False, "message": MSG_CAMPAIGN_FIELDS}
        if not narrative_text:
            return False, {
                "success": False,
                "message": "The first episode needs narrative text.",
            }

        bible = self.episodes.create_series_bible(
            title=title, genre=genre, tone=tone, premise=premise,
            bible_json=bible_json,
        )
        try:
            episode = self.episodes.create_episode(
                title=(episode_title or "").strip() or f"{title}: Episode 1",
                narrative_text=narrative_text,
                season_num=1,
                episode_num=1,
                audio_url=audio_url,
            )
        except DuplicateKeyError:
            self.episodes.delete_series_bible(bible["id"])
            return False, {
                "success": False,
                "message": "A campaign is already running; reset it first.",
            }

        state = self.state.upsert({
            "current_phase": PHASE_LISTEN,
            "current_episode_id": episode["id"],
            "current_series_bible_id": bible["id"],
            "phase_expiry": None,
        })
        logger.info("Campaign %r started (bible %s)", title, bible["id"])
        return True, {
            "success": True,
            "message": "Campaign started",
            "bible_id": bible["id"],
            "episode_id": episode["id"],
            "state": serialize_state(state),
        }

    def reset_campaign(self, keep_bible: bool = False) -> Tuple[bool, Dict]:
        """Point the game at nothing, then delete every round and episode."""
        update = {
            "current_phase": PHASE_LISTEN,
            "current_episode_id": None,
            "phase_expiry": None,
        }
        if not keep_bible:
            update["current_series_bible_id"] = None
        self.state.upsert(update)

        self.rounds.purge_everything()
        episodes = self.episodes.delete_all_episodes()
        bibles = 0 if keep_bible else self.episodes.delete_all_series_bibles()

        logger.warning(
            "Campaign reset: %d episode(s), %d bible(s) deleted", episodes, bibles
        )
        return True, {
            "success": True,
            "message": "Campaign reset",
            "keep_bible": keep_bible,
            "deleted_episodes": episodes,
            "deleted_bibles": bibles,
        }

    # ── Option tooling ───────────────────────────────────────────────────

    def synthesize_preview(self, episode_id: str) -> Tuple[bool, Dict]:
        """Run the synthesizer without writing, so drafts can be edited."""
        synthesizer = OptionSynthesizer(
            self.rounds, generate=self._generate, sleep=self._sleep
        )
        try:
            drafts = synthesizer.synthesize(episode_id)
        except OptionSynthesisError as exc:
            return False, {"success": False, "message": str(exc)}
        return True, {"success": True, "options": drafts}

    def simulate_submissions(
        self, admin_id: str, episode_id: str, count
    ) -> Tuple[bool, Dict]:
        """
        Generate synthetic suggestions in batches and store them as the
        admin's own submissions, marked ``is_synthetic``.
        """
        total = max(1, min(cfg.SIMULATION_MAX_TOTAL, int(count)))
        episode = self.episodes.get_episode(episode_id)
        if episode:
            header = (
                f"S{episode['season_num']}E{episode['episode_num']}: "
                f"{episode['title']}"
            )
            body = (episode.get("narrative_text") or "").strip()
        else:
            header, body = f"Episode: {episode_id}", ""
        context = (
            f"{header}\n\n{truncate_for_prompt(body, SIMULATION_CONTEXT_CHARS)}"
            if body else f"{header}\n\n(no narrative context found)"
        )

        inserted = 0
        remaining = total
        while remaining > 0:
            batch = min(cfg.SIMULATION_BATCH_SIZE, remaining)
            raw = generate_text_with_fallback(
                cfg.GEMINI_SIMULATOR_MODELS,
                build_simulation_prompt(context, batch),
                label="suggestion simulation",
                generate=self._generate,
                sleep=self._sleep,
            )
            suggestions = parse_suggestions(raw)[:batch]
            if not suggestions:
                logger.warning("Simulator returned no suggestions; stopping")
                break
            inserted += self.rounds.create_submissions(
                episode_id, admin_id, suggestions, is_synthetic=True
            )
            remaining -= batch

        logger.info(
            "Simulated %d submission(s) for episode %s", inserted, episode_id
        )
        return True, {
            "success": True,
            "message": f"Inserted {inserted} synthetic submissions",
            "inserted": inserted,
        }

    # ── Stats ────────────────────────────────────────────────────────────

    def option_stats(self, episode_id: str) -> Tuple[bool, Dict]:
        """The episode's options ranked by votes."""
        options = self.rounds.list_options(episode_id)
        counts = tally(self.rounds, [o["id"] for o in options])
        return True, {
            "success": True,
            "options": [
                {
                    "option_id": o["id"],
                    "title": o["title"],
                    "description": o["description"],
                    "vote_count": o["vote_count"],
                }
                for o in rank(options, counts)
            ],
        }

    def submission_stats(self, episode_id: str) -> Tuple[bool, Dict]:
        """
        The episode's submissions ranked by the votes of the options that
        cite them. A vote for an option counts once for each source.
        """
        submissions = self.rounds.list_submissions(episode_id)
        options = self.rounds.list_options(episode_id)
        option_counts = tally(self.rounds, [o["id"] for o in options])

        cited: List[str] = []
        for option in options:
            for submission_id in option.get("source_submission_ids") or []:
                cited.extend([submission_id] * option_counts[option["id"]])
        counts = count_votes([s["id"] for s in submissions], cited)

        return True, {
            "success": True,
            "submissions": [
                {
                    "submission_id": s["id"],
                    "user_id": s["user_id"],
                    "content_text": s["content_text"],
                    "heat": int(s.get("heat") or 0),
                    "vote_count": s["vote_count"],
                }
                for s in rank(submissions, counts)
            ],
        }


# ── Serialization helpers ────────────────────────────────────────────────


def _serialize_option(option: Dict) -> Dict:
    return {
        "id": option["id"],
        "episode_id": option["episode_id"],
        "title": option["title"],
        "description": option["description"],
        "source_submission_ids": option.get("source_submission_ids"),
    }


def serialize_state(state: Optional[Dict]) -> Optional[Dict]:
    """JSON-friendly view of the game state."""
    if state is None:
        return None
    return {
        "current_phase": state["current_phase"],
        "current_episode_id": state["current_episode_id"],
        "current_series_bible_id": state["current_series_bible_id"],
        "phase_expiry": isoformat_or_none(state["phase_expiry"]),
        "is_transitioning": state["is_transitioning"],
        "transitioning_since": isoformat_or_none(state["transitioning_since"]),
    }
