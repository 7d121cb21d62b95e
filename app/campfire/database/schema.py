"""
Schema capability negotiation.

Deployed databases may lag behind the fields this application knows how
to write. Instead of retrying writes with fewer fields when the store
complains, the schema version is read once from ``schema_meta`` and
turned into a :class:`SupportedColumns` set. Repositories consult it to
decide which fields they may read or write.
"""

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from pymongo.database import Database

from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

SCHEMA_META_ID = "schema"
CURRENT_SCHEMA_VERSION = 3

_BASE_COLUMNS: Dict[str, FrozenSet[str]] = {
    cfg.GAME_STATE_COLLECTION: frozenset({
        "id", "current_phase", "current_episode_id", "updated_at",
    }),
    cfg.EPISODES_COLLECTION: frozenset({
        "id", "title", "narrative_text", "audio_url",
        "season_num", "episode_num", "created_at",
    }),
    cfg.PATH_OPTIONS_COLLECTION: frozenset({
        "id", "episode_id", "title", "description", "created_at",
    }),
}

# Fields each schema version adds on top of the previous one
_VERSION_ADDITIONS: Dict[int, Dict[str, FrozenSet[str]]] = {
    2: {
        cfg.GAME_STATE_COLLECTION: frozenset({
            "phase_expiry", "current_series_bible_id",
        }),
    },
    3: {
        cfg.GAME_STATE_COLLECTION: frozenset({
            "is_transitioning", "transitioning_since",
        }),
        cfg.PATH_OPTIONS_COLLECTION: frozenset({"source_submission_ids"}),
        cfg.EPISODES_COLLECTION: frozenset({"credited_authors"}),
    },
}


class SupportedColumns:
    """Immutable per-collection field sets for one schema version."""

    def __init__(self, version: int) -> None:
        if version < 1 or version > CURRENT_SCHEMA_VERSION:
            raise ValueError(f"Unknown schema version: {version}")
        self.version = version
        columns = {name: set(fields) for name, fields in _BASE_COLUMNS.items()}
        for step in range(2, version + 1):
            for name, fields in _VERSION_ADDITIONS[step].items():
                columns.setdefault(name, set()).update(fields)
        self._columns = {name: frozenset(f) for name, f in columns.items()}

    @classmethod
    def current(cls) -> "SupportedColumns":
        return cls(CURRENT_SCHEMA_VERSION)

    def supports(self, collection: str, field: str) -> bool:
        """True if *field* may be written to *collection*.

        Collections without a tracked field set accept everything.
        """
        fields = self._columns.get(collection)
        return fields is None or field in fields

    def supports_all(self, collection: str, fields: Iterable[str]) -> bool:
        return all(self.supports(collection, f) for f in fields)

    def filter(self, collection: str, document: Dict) -> Dict:
        """Drop the keys of *document* the schema cannot store."""
        dropped = [k for k in document if not self.supports(collection, k)]
        if dropped:
            logger.debug(
                "Schema v%d: dropping %s from %s write",
                self.version, dropped, collection,
            )
        return {k: v for k, v in document.items() if k not in dropped}

    def __repr__(self) -> str:
        return f"SupportedColumns(version={self.version})"


# ── Detection (cached per database handle) ───────────────────────────────

_capability_cache: Dict[int, SupportedColumns] = {}


def read_schema_version(db: Database) -> Optional[int]:
    meta = db[cfg.SCHEMA_META_COLLECTION].find_one({"id": SCHEMA_META_ID})
    if meta is None:
        return None
    return int(meta.get("version", 1))


def write_schema_version(db: Database, version: int) -> None:
    db[cfg.SCHEMA_META_COLLECTION].update_one(
        {"id": SCHEMA_META_ID},
        {"$set": {"version": version}},
        upsert=True,
    )


def detect_supported_columns(db: Database) -> SupportedColumns:
    """
    Return the capability set for *db*, probing the store only once.

    A database without a ``schema_meta`` record is either brand new (no
    game state yet, so it is stamped with the current version) or a
    legacy deployment created before versioning (treated as version 1).
    """
    key = id(db)
    cached = _capability_cache.get(key)
    if cached is not None:
        return cached

    version = read_schema_version(db)
    if version is None:
        has_state = db[cfg.GAME_STATE_COLLECTION].find_one({}) is not None
        if has_state:
            version = 1
            logger.warning(
                "No schema_meta record on a populated database; "
                "assuming schema version 1"
            )
        else:
            version = CURRENT_SCHEMA_VERSION
            write_schema_version(db, version)

    columns = SupportedColumns(version)
    _capability_cache[key] = columns
    return columns


def migrate_to_current(db: Database) -> SupportedColumns:
    """
    Backfill the fields introduced after the stored schema version and
    stamp the database with :data:`CURRENT_SCHEMA_VERSION`.
    """
    version = read_schema_version(db) or 1
    if version < 2:
        db[cfg.GAME_STATE_COLLECTION].update_many(
            {"phase_expiry": {"$exists": False}},
            {"$set": {"phase_expiry": None, "current_series_bible_id": None}},
        )
    if version < 3:
        db[cfg.GAME_STATE_COLLECTION].update_many(
            {"is_transitioning": {"$exists": False}},
            {"$set": {"is_transitioning": False, "transitioning_since": None}},
        )
        db[cfg.PATH_OPTIONS_COLLECTION].update_many(
            {"source_submission_ids": {"$exists": False}},
            {"$set": {"source_submission_ids": None}},
        )
    write_schema_version(db, CURRENT_SCHEMA_VERSION)
    if version < CURRENT_SCHEMA_VERSION:
        logger.info(
            "Schema migrated from v%d to v%d", version, CURRENT_SCHEMA_VERSION
        )

    columns = SupportedColumns.current()
    _capability_cache[id(db)] = columns
    return columns


def clear_capability_cache() -> None:
    """Forget every cached capability set (used between test databases)."""
    _capability_cache.clear()
