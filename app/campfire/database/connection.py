"""
MongoDB connection management.

Provides a singleton DatabaseManager and a convenience ``get_db()`` helper.
``get_db`` doubles as the FastAPI dependency that hands the store handle
to route handlers, so tests can swap the database with
``app.dependency_overrides[get_db]``.

All collection indexes are configured on first connection, and the
schema capability set is detected once and cached.
"""

import logging
from typing import Optional

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure

from campfire.database.schema import (
    SupportedColumns,
    detect_supported_columns,
    migrate_to_current,
)
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()


class DatabaseManager:
    """Process-wide singleton that owns the MongoClient."""

    _instance: Optional["DatabaseManager"] = None
    _client: Optional[MongoClient] = None
    _db: Optional[Database] = None

    def __new__(cls) -> "DatabaseManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if self._client is None:
            self.connect()

    # ── Connection ───────────────────────────────────────────────────────

    def connect(self) -> None:
        """Establish the MongoDB connection, create indexes, detect schema."""
        try:
            self._client = MongoClient(
                cfg.MONGODB_URL, serverSelectionTimeoutMS=5000
            )
            self._client.admin.command("ping")
            self._db = self._client[cfg.DATABASE_NAME]
            logger.info("Connected to MongoDB database %s", cfg.DATABASE_NAME)

            ensure_indexes(self._db)
            logger.info("Database indexes created / verified")

            if cfg.SCHEMA_AUTO_MIGRATE:
                columns = migrate_to_current(self._db)
            else:
                columns = detect_supported_columns(self._db)
            logger.info("Schema capabilities: version %d", columns.version)
        except ConnectionFailure as exc:
            logger.error("Failed to connect to MongoDB: %s", exc)
            raise

    def get_db(self) -> Database:
        """Return the database handle, reconnecting if necessary."""
        if self._db is None:
            self.connect()
        return self._db

    def close(self) -> None:
        """Gracefully close the connection."""
        if self._client:
            self._client.close()
            logger.info("MongoDB connection closed")


# ── Index helpers ────────────────────────────────────────────────────────


def ensure_indexes(db: Database) -> None:
    """Create all required indexes for the application."""
    db[cfg.GAME_STATE_COLLECTION].create_index("id", unique=True)

    db[cfg.EPISODES_COLLECTION].create_index("id", unique=True)
    db[cfg.EPISODES_COLLECTION].create_index(
        [("season_num", 1), ("episode_num", 1)], unique=True
    )

    db[cfg.SUBMISSIONS_COLLECTION].create_index("id", unique=True)
    db[cfg.SUBMISSIONS_COLLECTION].create_index("episode_id")
    db[cfg.SUBMISSIONS_COLLECTION].create_index(
        [("episode_id", 1), ("created_at", -1)]
    )

    db[cfg.PATH_OPTIONS_COLLECTION].create_index("id", unique=True)
    db[cfg.PATH_OPTIONS_COLLECTION].create_index("episode_id")

    # One vote per user per option
    db[cfg.VOTES_COLLECTION].create_index("id", unique=True)
    db[cfg.VOTES_COLLECTION].create_index("option_id")
    db[cfg.VOTES_COLLECTION].create_index(
        [("user_id", 1), ("option_id", 1)], unique=True
    )

    db[cfg.SERIES_BIBLE_COLLECTION].create_index("id", unique=True)
    db[cfg.PROFILES_COLLECTION].create_index("id", unique=True)


# ── Convenience function ─────────────────────────────────────────────────


def get_db() -> Database:
    """Shortcut to obtain the database handle."""
    return DatabaseManager().get_db()


def get_supported_columns(db: Database) -> SupportedColumns:
    """Return the cached schema capability set for *db*."""
    return detect_supported_columns(db)
