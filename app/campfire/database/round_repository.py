"""
Repository for per-round data.

Covers the *submissions*, *path_options* and *votes* collections. All
three are scoped to one episode and live for exactly one round.
"""

import logging
import time
from typing import Dict, Iterable, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from campfire.database.schema import SupportedColumns, detect_supported_columns
from campfire.errors import ConcurrentUpdateError
from commons import generate_id, utcnow
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()


def _strip(document: Optional[Dict]) -> Optional[Dict]:
    if document:
        document.pop("_id", None)
    return document


class RoundRepository:
    """Submissions, path options and votes for the active episode."""

    def __init__(
        self, db: Database, columns: Optional[SupportedColumns] = None
    ) -> None:
        self._db = db
        self.columns = columns or detect_supported_columns(db)
        self._submissions = db[cfg.SUBMISSIONS_COLLECTION]
        self._options = db[cfg.PATH_OPTIONS_COLLECTION]
        self._votes = db[cfg.VOTES_COLLECTION]

    # ═══════════════════════════════════════════════════════════════════
    #  SUBMISSIONS
    # ═══════════════════════════════════════════════════════════════════

    def create_submission(
        self,
        episode_id: str,
        user_id: str,
        content_text: str,
        is_synthetic: bool = False,
    ) -> Dict:
        """Insert a single submission with zero heat."""
        document = {
            "id": generate_id(),
            "episode_id": episode_id,
            "user_id": user_id,
            "content_text": content_text,
            "is_synthetic": is_synthetic,
            "heat": 0,
            "created_at": utcnow(),
        }
        self._submissions.insert_one(document)
        logger.info(
            "Submission %s added to episode %s by %s",
            document["id"], episode_id, user_id,
        )
        return _strip(document)

    def create_submissions(
        self,
        episode_id: str,
        user_id: str,
        texts: Iterable[str],
        is_synthetic: bool = True,
    ) -> int:
        """Bulk insert submissions sharing one author; returns the count."""
        now = utcnow()
        documents = [
            {
                "id": generate_id(),
                "episode_id": episode_id,
                "user_id": user_id,
                "content_text": text,
                "is_synthetic": is_synthetic,
                "heat": 0,
                "created_at": now,
            }
            for text in texts
        ]
        if not documents:
            return 0
        self._submissions.insert_many(documents)
        return len(documents)

    def get_submission(self, submission_id: str) -> Optional[Dict]:
        return _strip(self._submissions.find_one({"id": submission_id}))

    def get_submissions_by_ids(self, submission_ids: List[str]) -> List[Dict]:
        if not submission_ids:
            return []
        cursor = self._submissions.find({"id": {"$in": submission_ids}})
        return [_strip(s) for s in cursor]

    def list_submissions(self, episode_id: str) -> List[Dict]:
        """All submissions for an episode, oldest first."""
        cursor = self._submissions.find({"episode_id": episode_id}).sort(
            [("created_at", ASCENDING), ("id", ASCENDING)]
        )
        return [_strip(s) for s in cursor]

    def recent_submissions(self, episode_id: str, limit: int) -> List[Dict]:
        """The *limit* newest submissions for an episode."""
        cursor = (
            self._submissions.find({"episode_id": episode_id})
            .sort([("created_at", DESCENDING), ("id", DESCENDING)])
            .limit(limit)
        )
        return [_strip(s) for s in cursor]

    def bump_heat(
        self,
        submission_id: str,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> Optional[int]:
        """
        Increment a submission's heat with a read-compare-write loop.

        Returns the new heat, or None if the submission does not exist.
        Raises ConcurrentUpdateError once *max_retries* attempts have all
        lost the race.
        """
        if max_retries is None:
            max_retries = cfg.HEAT_MAX_RETRIES
        if backoff_seconds is None:
            backoff_seconds = cfg.HEAT_RETRY_BACKOFF_SECONDS

        for attempt in range(1, max_retries + 1):
            current = self._submissions.find_one(
                {"id": submission_id}, {"heat": 1}
            )
            if current is None:
                return None
            heat = int(current.get("heat") or 0)
            result = self._submissions.update_one(
                {"id": submission_id, "heat": current.get("heat")},
                {"$set": {"heat": heat + 1}},
            )
            if result.matched_count == 1:
                return heat + 1
            logger.debug(
                "Heat CAS lost for submission %s (attempt %d/%d)",
                submission_id, attempt, max_retries,
            )
            if backoff_seconds and attempt < max_retries:
                time.sleep(backoff_seconds * attempt)

        raise ConcurrentUpdateError(
            f"Could not update heat for submission {submission_id} "
            f"after {max_retries} attempts"
        )

    def delete_submissions(self, episode_id: str) -> int:
        result = self._submissions.delete_many({"episode_id": episode_id})
        return result.deleted_count

    # ═══════════════════════════════════════════════════════════════════
    #  PATH OPTIONS
    # ═══════════════════════════════════════════════════════════════════

    def replace_options(self, episode_id: str, drafts: List[Dict]) -> List[Dict]:
        """
        Delete every option of *episode_id* and the votes cast on them,
        then insert *drafts*.

        Deleting first means a failed insert leaves no options rather
        than a mix of two rounds.
        """
        stale_ids = [
            o["id"] for o in self._options.find({"episode_id": episode_id}, {"id": 1})
        ]
        self.delete_votes(stale_ids)
        self._options.delete_many({"episode_id": episode_id})

        now = utcnow()
        documents = []
        for draft in drafts:
            document = {
                "id": generate_id(),
                "episode_id": episode_id,
                "title": draft["title"],
                "description": draft["description"],
                "source_submission_ids": draft.get("source_submission_ids"),
                "created_at": now,
            }
            documents.append(
                self.columns.filter(cfg.PATH_OPTIONS_COLLECTION, document)
            )
        if documents:
            self._options.insert_many(documents)
        logger.info(
            "Replaced path options for episode %s (%d options)",
            episode_id, len(documents),
        )
        return [_strip(d) for d in documents]

    def list_options(self, episode_id: str) -> List[Dict]:
        cursor = self._options.find({"episode_id": episode_id}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        options = []
        for option in cursor:
            option.setdefault("source_submission_ids", None)
            options.append(_strip(option))
        return options

    def get_option(self, option_id: str) -> Optional[Dict]:
        option = _strip(self._options.find_one({"id": option_id}))
        if option is not None:
            option.setdefault("source_submission_ids", None)
        return option

    def delete_options(self, episode_id: str) -> int:
        result = self._options.delete_many({"episode_id": episode_id})
        return result.deleted_count

    # ═══════════════════════════════════════════════════════════════════
    #  VOTES
    # ═══════════════════════════════════════════════════════════════════

    def insert_vote(self, user_id: str, option_id: str) -> bool:
        """Record a vote. Returns False if this user already voted for it."""
        try:
            self._votes.insert_one({
                "id": generate_id(),
                "user_id": user_id,
                "option_id": option_id,
                "created_at": utcnow(),
            })
        except DuplicateKeyError:
            logger.info(
                "Duplicate vote by %s for option %s ignored", user_id, option_id
            )
            return False
        return True

    def vote_option_ids(self, option_ids: List[str]) -> List[str]:
        """The option id of every vote cast for one of *option_ids*."""
        if not option_ids:
            return []
        cursor = self._votes.find(
            {"option_id": {"$in": option_ids}}, {"option_id": 1}
        )
        return [v["option_id"] for v in cursor]

    def delete_votes(self, option_ids: List[str]) -> int:
        if not option_ids:
            return 0
        result = self._votes.delete_many({"option_id": {"$in": option_ids}})
        return result.deleted_count

    # ═══════════════════════════════════════════════════════════════════
    #  ROUND LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════

    def purge_round(self, episode_id: str) -> Dict[str, int]:
        """Delete votes, options and submissions belonging to *episode_id*."""
        option_ids = [o["id"] for o in self.list_options(episode_id)]
        counts = {
            "votes": self.delete_votes(option_ids),
            "options": self.delete_options(episode_id),
            "submissions": self.delete_submissions(episode_id),
        }
        logger.info("Purged round data for episode %s: %s", episode_id, counts)
        return counts

    def purge_everything(self) -> None:
        """Delete every submission, option and vote (campaign reset)."""
        self._votes.delete_many({})
        self._options.delete_many({})
        self._submissions.delete_many({})
        logger.info("All round data deleted")
