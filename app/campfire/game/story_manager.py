"""
Story operations for admins: campaign genesis and next-episode drafting.

Model failures come back as ``(False, {"message": ...})`` like every other
manager result. A missing Gemini key is a ConfigurationError and is left
to propagate.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pymongo.database import Database

from campfire.errors import StoryGenerationError, TextGenerationError
from campfire.game.admin import AdminManager
from campfire.game.constants import MSG_CAMPAIGN_FIELDS, MSG_GENRE_TONE, MSG_NO_BIBLE
from campfire.game.continuity import build_continuity_header
from campfire.game.director import EpisodeDirector
from campfire.game.genesis import CampaignGenesis
from campfire.game.text_generation import TextGenerator

logger = logging.getLogger(__name__)

CANON_RECENT_EPISODES = 4

_MODEL_FAILURES = (TextGenerationError, StoryGenerationError, ValueError)


def _failure(message: str) -> Tuple[bool, Dict]:
    return False, {"success": False, "message": message}


class StoryManager:
    """Genesis and drafting bound to one database handle."""

    def __init__(
        self,
        db: Database,
        generate: Optional[TextGenerator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.admin = AdminManager(db, generate=generate, sleep=sleep)
        self.genesis = CampaignGenesis(generate=generate, sleep=sleep)
        self.director = EpisodeDirector(generate=generate, sleep=sleep)

    # ── Bible lookup ─────────────────────────────────────────────────────

    def _active_bible(self) -> Optional[Dict]:
        """The bible the game state points at, else the newest one."""
        state = self.admin.state.read()
        bible_id = state["current_series_bible_id"] if state else None
        if bible_id:
            return self.admin.episodes.get_series_bible(bible_id)
        return self.admin.episodes.latest_series_bible()

    def active_series_bible(self) -> Tuple[bool, Dict]:
        return True, {"success": True, "bible": self._active_bible()}

    def _canon_episodes(self) -> List[Dict]:
        episodes = self.admin.episodes
        first = episodes.get_episode_by_number(1, 1)
        canon: List[Dict] = []
        for episode in [first] + episodes.recent_episodes(CANON_RECENT_EPISODES):
            if episode and all(e["id"] != episode["id"] for e in canon):
                canon.append(episode)
        return canon

    def _contributor_names(self, option_id: Optional[str]) -> List[str]:
        user_ids = self.admin.source_author_ids(option_id)
        return [
            p["username"].strip()
            for p in self.admin.profiles.get_profiles(user_ids)
            if (p.get("username") or "").strip()
        ]

    def continuity_header(
        self,
        winning_title: str,
        winning_description: str,
        winning_option_id: Optional[str] = None,
    ) -> Tuple[bool, Dict]:
        """Prompt preamble tying the next episode to the bible and canon."""
        bible = self._active_bible()
        if not bible or not bible.get("bible_json"):
            return _failure(MSG_NO_BIBLE)
        header = build_continuity_header(
            bible["bible_json"],
            self._canon_episodes(),
            winning_title,
            winning_description,
            self._contributor_names(winning_option_id),
        )
        return True, {"success": True, "header": header}

    # ── Genesis ──────────────────────────────────────────────────────────

    def oracle_premises(
        self, genre: str, tone: str, title: Optional[str] = None
    ) -> Tuple[bool, Dict]:
        genre, tone = (genre or "").strip(), (tone or "").strip()
        if not genre or not tone:
            return _failure(MSG_GENRE_TONE)
        try:
            premises = self.genesis.premises(genre, tone, (title or "").strip() or None)
        except _MODEL_FAILURES as exc:
            logger.warning("Premise generation failed: %s", exc)
            return _failure(str(exc))
        return True, {"success": True, "premises": premises}

    def ignite_campaign(
        self, title: str, genre: str, tone: str, premise: str
    ) -> Tuple[bool, Dict]:
        """Generate a bible and Episode 1, then start the campaign with them."""
        title, genre, tone, premise = (
            (title or "").strip(), (genre or "").strip(),
            (tone or "").strip(), (premise or "").strip(),
        )
        if not title or not genre or not tone or not premise:
            return _failure(MSG_CAMPAIGN_FIELDS)
        try:
            bible, episode_one = self.genesis.ignite(genre, premise, tone)
        except _MODEL_FAILURES as exc:
            logger.warning("Campaign genesis failed for %r: %s", title, exc)
            return _failure(str(exc))
        return self.admin.start_campaign(
            title=title,
            genre=genre,
            tone=tone,
            premise=premise,
            narrative_text=episode_one,
            bible_json=bible,
        )

    # ── Drafting ─────────────────────────────────────────────────────────

    def draft_beat_sheet(
        self, winning_text: str, context: str, contributors: Sequence[str] = ()
    ) -> Tuple[bool, Dict]:
        if not (winning_text or "").strip():
            return _failure("A winning option is required.")
        try:
            beat_sheet = self.director.beat_sheet(winning_text.strip(), context, contributors)
        except _MODEL_FAILURES as exc:
            return _failure(str(exc))
        return True, {"success": True, "beat_sheet": beat_sheet}

    def draft_script(
        self, beat_sheet: str, context: Optional[str] = None
    ) -> Tuple[bool, Dict]:
        if not (beat_sheet or "").strip():
            return _failure("A beat sheet is required.")
        try:
            script = self.director.script(beat_sheet, context)
        except _MODEL_FAILURES as exc:
            return _failure(str(exc))
        return True, {"success": True, "script": script}

    def polish_narration(
        self, prose: str, context: Optional[str] = None
    ) -> Tuple[bool, Dict]:
        if not (prose or "").strip():
            return _failure("Prose is required.")
        try:
            text = self.director.polish_for_narration(prose, context)
        except _MODEL_FAILURES as exc:
            return _failure(str(exc))
        return True, {"success": True, "text": text}
