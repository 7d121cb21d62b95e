import json
from datetime import datetime, timedelta

import mongomock
import pytest
from jose import jwt

from campfire.database.connection import ensure_indexes
from campfire.database.episode_repository import EpisodeRepository
from campfire.database.game_state_repository import GameStateStore
from campfire.database.round_repository import RoundRepository
from campfire.database.schema import clear_capability_cache
from configs.config import get_config

# Whole seconds, so stored timestamps compare equal after a round trip
T0 = datetime(2025, 1, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def reset_capabilities():
    clear_capability_cache()
    yield
    clear_capability_cache()


@pytest.fixture
def db():
    """Fresh in-memory database with production indexes."""
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def store(db):
    return GameStateStore(db)


@pytest.fixture
def rounds(db, store):
    return RoundRepository(db, store.columns)


@pytest.fixture
def episodes(db, store):
    return EpisodeRepository(db, store.columns)


@pytest.fixture
def episode(episodes):
    return episodes.create_episode(
        title="The Ember Road",
        narrative_text="The caravan stops at the edge of the burnt forest.",
        season_num=1,
        episode_num=1,
    )


class FakeGenerator:
    """Stand-in for the Gemini call: replays canned replies, records prompts."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, model, prompt):
        self.calls.append((model, prompt))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


def options_reply(*indices_per_option):
    """A well-formed model answer with one option per entry."""
    return json.dumps([
        {
            "title": f"Path {n}",
            "description": f"Description of path {n}",
            "source_indices": list(indices),
        }
        for n, indices in enumerate(indices_per_option, start=1)
    ])


@pytest.fixture
def fake_generator():
    return FakeGenerator(options_reply([1], [2], [3]))


def create_access_token(user_id, expires_in=timedelta(minutes=60)):
    """Sign a bearer token the way the identity provider does."""
    cfg = get_config()
    return jwt.encode(
        {"sub": user_id, "exp": datetime.utcnow() + expires_in},
        cfg.JWT_SECRET_KEY,
        algorithm=cfg.JWT_ALGORITHM,
    )


# A complete story bible as the model returns it
BIBLE = {
    "objective_story": {
        "domain": "Physics",
        "concern": "The Future",
        "issue": "Fate",
        "problem": "Pursuit",
        "solution": "Avoid",
        "goal": "Reach the coast",
        "consequence": "the ash swallows the valley",
    },
    "main_character": {
        "name": "Zora",
        "domain": "Mind",
        "resolve": "Change",
        "growth": "Stop",
        "approach": "Do-er",
        "crucial_flaw": "Suspicion",
    },
    "influence_character": {
        "name": "Kell",
        "domain": "Psychology",
        "unique_ability": "Reads lies",
        "impact": "Forces honesty",
    },
    "relationship_story": {
        "domain": "Universe",
        "dynamic": "Rivals",
        "trust_score": 42,
        "catalyst": "A stolen map",
    },
    "cast": {
        "Zora": {"role": "Protagonist", "voice_dna": "Gruff, clipped.", "key_phrases": ["Eyes up"]},
    },
    "driver": "Action",
    "limit": "Timelock",
    "outcome": "Success",
    "judgment": "Good",
    "active_facts": ["The forest burned"],
    "inventory": ["map"],
}

EPISODE_ONE = "Ash falls on the caravan as Zora counts the wagons twice."
