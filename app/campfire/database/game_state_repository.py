"""
Repository for the singleton ``game_state`` document.

The document is addressed by ``GAME_STATE_SINGLETON_ID`` from the
configuration. :meth:`GameStateStore.compare_and_swap` is the only
primitive the transition lock relies on: a single-document
``update_one`` whose filter carries every expected field, so MongoDB
applies it atomically or not at all.
"""

import logging
from typing import Dict, Optional

from pymongo.database import Database

from campfire.database.schema import SupportedColumns, detect_supported_columns
from commons import utcnow
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

LOCK_FIELDS = ("is_transitioning", "transitioning_since")


class GameStateStore:
    """Read / conditional-update / forced-update access to game_state."""

    def __init__(
        self,
        db: Database,
        columns: Optional[SupportedColumns] = None,
        singleton_id: Optional[str] = None,
    ) -> None:
        self._db = db
        self._collection = db[cfg.GAME_STATE_COLLECTION]
        self.columns = columns or detect_supported_columns(db)
        self.singleton_id = singleton_id or cfg.GAME_STATE_SINGLETON_ID

    # ── Capabilities ─────────────────────────────────────────────────────

    @property
    def supports_lock(self) -> bool:
        return self.columns.supports_all(cfg.GAME_STATE_COLLECTION, LOCK_FIELDS)

    @property
    def supports_expiry(self) -> bool:
        return self.columns.supports(cfg.GAME_STATE_COLLECTION, "phase_expiry")

    # ── Reads ────────────────────────────────────────────────────────────

    def read(self) -> Optional[Dict]:
        """Return the game state with absent optional fields defaulted."""
        state = self._collection.find_one({"id": self.singleton_id})
        if not state:
            return None
        state.pop("_id", None)
        state.setdefault("current_episode_id", None)
        state.setdefault("current_series_bible_id", None)
        state.setdefault("phase_expiry", None)
        state.setdefault("is_transitioning", False)
        state.setdefault("transitioning_since", None)
        return state

    # ── Writes ───────────────────────────────────────────────────────────

    def compare_and_swap(self, expected: Dict, new_fields: Dict) -> bool:
        """
        Apply *new_fields* only if the document matches every field of
        *expected*. Returns True when the update was applied.
        """
        query = {"id": self.singleton_id}
        query.update(expected)
        update = self._writable(new_fields)
        result = self._collection.update_one(query, {"$set": update})
        swapped = result.matched_count == 1
        logger.debug(
            "Game state CAS expected=%s new=%s -> %s",
            expected, new_fields, swapped,
        )
        return swapped

    def force_update(self, new_fields: Dict) -> bool:
        """Unconditionally update the singleton. Returns False if missing."""
        update = self._writable(new_fields)
        result = self._collection.update_one(
            {"id": self.singleton_id}, {"$set": update}
        )
        if result.matched_count == 0:
            logger.warning(
                "Game state %s update failed, no match", self.singleton_id
            )
            return False
        logger.debug("Game state updated with: %s", update)
        return True

    def create(self, fields: Optional[Dict] = None) -> Dict:
        """Insert the singleton with defaults (no-op if it already exists)."""
        document = {
            "current_phase": "LISTEN",
            "current_episode_id": None,
            "current_series_bible_id": None,
            "phase_expiry": None,
            "is_transitioning": False,
            "transitioning_since": None,
        }
        document.update(fields or {})
        document = self._writable(document)
        document.pop("id", None)
        self._collection.update_one(
            {"id": self.singleton_id},
            {"$setOnInsert": {"id": self.singleton_id, **document}},
            upsert=True,
        )
        logger.info("Game state singleton %s ensured", self.singleton_id)
        return self.read()

    def upsert(self, new_fields: Dict) -> Dict:
        """Update the singleton, creating it first when it does not exist."""
        if not self.force_update(new_fields):
            self.create(new_fields)
        return self.read()

    def release_lock(self) -> bool:
        """Clear the transition lock unconditionally."""
        return self.force_update(
            {"is_transitioning": False, "transitioning_since": None}
        )

    def _writable(self, fields: Dict) -> Dict:
        update = self.columns.filter(cfg.GAME_STATE_COLLECTION, dict(fields))
        update["updated_at"] = utcnow()
        return update
