"""
Repository for published episodes and series bibles.
"""

import logging
from typing import Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from campfire.database.schema import SupportedColumns, detect_supported_columns
from commons import generate_id, utcnow
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()


class EpisodeRepository:
    """Episodes (ordered by season/episode number) and series bibles."""

    def __init__(
        self, db: Database, columns: Optional[SupportedColumns] = None
    ) -> None:
        self._db = db
        self.columns = columns or detect_supported_columns(db)
        self._episodes = db[cfg.EPISODES_COLLECTION]
        self._bibles = db[cfg.SERIES_BIBLE_COLLECTION]

    # ── Episodes ─────────────────────────────────────────────────────────

    def create_episode(
        self,
        title: str,
        narrative_text: str,
        season_num: int,
        episode_num: int,
        audio_url: Optional[str] = None,
        credited_authors: Optional[List[Dict]] = None,
    ) -> Dict:
        """
        Insert an episode. A duplicate (season_num, episode_num) pair
        raises pymongo's DuplicateKeyError.
        """
        document = {
            "id": generate_id(),
            "title": title,
            "narrative_text": narrative_text,
            "audio_url": audio_url,
            "season_num": season_num,
            "episode_num": episode_num,
            "credited_authors": credited_authors or [],
            "created_at": utcnow(),
        }
        document = self.columns.filter(cfg.EPISODES_COLLECTION, document)
        self._episodes.insert_one(document)
        document.pop("_id", None)
        logger.info(
            "Episode %s created: S%dE%d %s",
            document["id"], season_num, episode_num, title,
        )
        return document

    def get_episode(self, episode_id: str) -> Optional[Dict]:
        episode = self._episodes.find_one({"id": episode_id})
        if episode:
            episode.pop("_id", None)
        return episode

    def latest_episode(self) -> Optional[Dict]:
        """Highest (season_num, episode_num) episode, if any."""
        cursor = (
            self._episodes.find({})
            .sort([("season_num", DESCENDING), ("episode_num", DESCENDING)])
            .limit(1)
        )
        for episode in cursor:
            episode.pop("_id", None)
            return episode
        return None

    def get_episode_by_number(self, season_num: int, episode_num: int) -> Optional[Dict]:
        episode = self._episodes.find_one(
            {"season_num": season_num, "episode_num": episode_num}
        )
        if episode:
            episode.pop("_id", None)
        return episode

    def recent_episodes(self, limit: int) -> List[Dict]:
        """Newest episodes first, by (season_num, episode_num)."""
        cursor = (
            self._episodes.find({})
            .sort([("season_num", DESCENDING), ("episode_num", DESCENDING)])
            .limit(limit)
        )
        episodes = []
        for episode in cursor:
            episode.pop("_id", None)
            episodes.append(episode)
        return episodes

    def delete_episode(self, episode_id: str) -> bool:
        result = self._episodes.delete_one({"id": episode_id})
        logger.info("Episode %s deleted", episode_id)
        return result.deleted_count > 0

    def delete_all_episodes(self) -> int:
        return self._episodes.delete_many({}).deleted_count

    # ── Series bibles ────────────────────────────────────────────────────

    def create_series_bible(
        self,
        title: str,
        genre: str,
        tone: str,
        premise: str,
        bible_json: Optional[Dict] = None,
        intro_audio_url: Optional[str] = None,
    ) -> Dict:
        document = {
            "id": generate_id(),
            "title": title,
            "genre": genre,
            "tone": tone,
            "premise": premise,
            "bible_json": bible_json or {},
            "intro_audio_url": intro_audio_url,
            "created_at": utcnow(),
        }
        self._bibles.insert_one(document)
        document.pop("_id", None)
        logger.info("Series bible %s created: %s", document["id"], title)
        return document

    def get_series_bible(self, bible_id: str) -> Optional[Dict]:
        bible = self._bibles.find_one({"id": bible_id})
        if bible:
            bible.pop("_id", None)
        return bible

    def latest_series_bible(self) -> Optional[Dict]:
        for bible in self._bibles.find({}).sort("created_at", DESCENDING).limit(1):
            bible.pop("_id", None)
            return bible
        return None

    def delete_series_bible(self, bible_id: str) -> bool:
        return self._bibles.delete_one({"id": bible_id}).deleted_count > 0

    def delete_all_series_bibles(self) -> int:
        return self._bibles.delete_many({}).deleted_count
