from datetime import timedelta
from unittest import mock

import pytest

from campfire.database.game_state_repository import GameStateStore
from campfire.database.schema import SupportedColumns
from campfire.errors import ConfigurationError
from campfire.game.constants import PLACEHOLDER_OPTION_DESCRIPTION
from campfire.game.option_synthesizer import OptionSynthesizer
from campfire.game.schedule import PhaseSchedule
from campfire.game.transition_engine import TransitionEngine, fallback_options
from conftest import T0, FakeGenerator

schedule = PhaseSchedule()


def make_engine(store, rounds, generator=None, synthesizer=None):
    synthesizer = synthesizer or OptionSynthesizer(
        rounds, generate=generator, sleep=lambda seconds: None
    )
    return TransitionEngine(store, rounds, synthesizer, schedule=schedule)


def add_submissions(rounds, episode_id, count, is_synthetic=False):
    return [
        rounds.create_submission(
            episode_id, f"user-{n}", f"Idea number {n}", is_synthetic=is_synthetic
        )
        for n in range(count)
    ]


# ── SUBMIT → VOTE ───────────────────────────────────────────


def test_submit_to_vote_with_synthesized_options(store, rounds, episode, fake_generator):
    store.create({
        "current_phase": "SUBMIT",
        "current_episode_id": episode["id"],
        "phase_expiry": T0 - timedelta(seconds=1),
    })
    submissions = add_submissions(rounds, episode["id"], 5)

    result = make_engine(store, rounds, fake_generator).tick(T0)

    assert result["ok"] is True
    assert result["status"] == "Transitioned"
    assert result["from"] == "SUBMIT"
    assert result["to"] == "VOTE"
    assert result["options_source"] == "synthesized"

    options = rounds.list_options(episode["id"])
    assert len(options) == 3
    assert [o["title"] for o in options] == ["Path 1", "Path 2", "Path 3"]
    ids = {s["id"] for s in submissions}
    for option in options:
        assert len(option["source_submission_ids"]) == 1
        assert option["source_submission_ids"][0] in ids
    assert len({o["source_submission_ids"][0] for o in options}) == 3

    state = store.read()
    assert state["current_phase"] == "VOTE"
    assert state["phase_expiry"] == T0 + schedule.duration_for("VOTE")
    assert state["is_transitioning"] is False
    assert state["transitioning_since"] is None


def test_submit_to_vote_falls_back_when_synthesis_fails(store, rounds, episode):
    store.create({
        "current_phase": "SUBMIT",
        "current_episode_id": episode["id"],
        "phase_expiry": T0 - timedelta(seconds=1),
    })
    submissions = add_submissions(rounds, episode["id"], 5)
    generator = FakeGenerator(RuntimeError("provider exploded"))

    result = make_engine(store, rounds, generator).tick(T0)

    assert result["status"] == "Transitioned"
    assert result["to"] == "VOTE"
    assert result["options_source"] == "fallback"

    options = rounds.list_options(episode["id"])
    assert len(options) == 3
    ids = {s["id"] for s in submissions}
    for option in options:
        assert len(option["source_submission_ids"]) == 1
        assert option["source_submission_ids"][0] in ids
    assert store.read()["is_transitioning"] is False


def test_fallback_pads_with_placeholders(store, rounds, episode, fake_generator):
    store.create({
        "current_phase": "SUBMIT",
        "current_episode_id": episode["id"],
        "phase_expiry": T0 - timedelta(seconds=1),
    })
    add_submissions(rounds, episode["id"], 2)

    result = make_engine(store, rounds, fake_generator).tick(T0)

    assert result["options_source"] == "fallback"
    # Two submissions are not enough to synthesize; the model is never asked
    assert fake_generator.calls == []
    options = rounds.list_options(episode["id"])
    assert len(options) == 3
    attributed = [o for o in options if o["source_submission_ids"]]
    fillers = [o for o in options if o["description"] == PLACEHOLDER_OPTION_DESCRIPTION]
    assert len(attributed) == 2
    assert len(fillers) == 1
    assert fillers[0]["source_submission_ids"] is None


def test_fallback_options_truncate_titles_and_skip_synthetic_credit():
    long_text = "x" * 100
    options = fallback_options([
        {"id": "a", "content_text": long_text, "is_synthetic": True},
        {"id": "b", "content_text": "  short  ", "is_synthetic": True},
    ])
    assert len(options) == 3
    assert options[0]["title"] == "x" * 40
    assert options[0]["description"] == long_text
    assert options[1]["title"] == "short"
    assert options[0]["source_submission_ids"] == []
    assert options[2]["title"] == "Option 3"


def test_submit_without_episode_fails_and_releases_lock(store, rounds):
    store.create({
        "current_phase": "SUBMIT",
        "phase_expiry": T0 - timedelta(seconds=1),
    })

    ok, result = make_engine(store, rounds).run_tick(T0)

    assert ok is False
    assert result == {"ok": False, "error": "No active episode."}
    state = store.read()
    assert state["current_phase"] == "SUBMIT"
    assert state["is_transitioning"] is False
    assert state["transitioning_since"] is None


# ── VOTE → PROCESS → SUBMIT ─────────────────────────────────


def test_vote_to_process_reports_ranking_without_mutation(store, rounds, episode):
    store.create({
        "current_phase": "VOTE",
        "current_episode_id": episode["id"],
        "phase_expiry": T0 - timedelta(seconds=1),
    })
    options = rounds.replace_options(episode["id"], [
        {"title": "A", "description": "a"},
        {"title": "B", "description": "b"},
        {"title": "C", "description": "c"},
    ])
    rounds.insert_vote("u1", options[1]["id"])
    rounds.insert_vote("u2", options[1]["id"])
    rounds.insert_vote("u1", options[2]["id"])

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == "Transitioned"
    assert result["to"] == "PROCESS"
    assert [r["title"] for r in result["results"]] == ["B", "C", "A"]
    assert [r["vote_count"] for r in result["results"]] == [2, 1, 0]
    assert len(rounds.list_options(episode["id"])) == 3
    assert store.read()["phase_expiry"] == T0 + schedule.duration_for("PROCESS")


def test_process_purges_round_and_reopens_submissions(store, rounds, episodes, episode):
    store.create({
        "current_phase": "PROCESS",
        "current_episode_id": episode["id"],
        "phase_expiry": T0 - timedelta(seconds=1),
    })
    add_submissions(rounds, episode["id"], 8)
    options = rounds.replace_options(episode["id"], [
        {"title": "A", "description": "a"},
        {"title": "B", "description": "b"},
    ])
    for option in options:
        for n in range(5):
            assert rounds.insert_vote(f"voter-{n}", option["id"])

    other = episodes.create_episode("Elsewhere", "...", 1, 2)
    add_submissions(rounds, other["id"], 1)

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == "Transitioned"
    assert result["from"] == "PROCESS"
    assert result["to"] == "SUBMIT"
    assert result["purged"] == {"votes": 10, "options": 2, "submissions": 8}
    assert rounds.list_submissions(episode["id"]) == []
    assert rounds.list_options(episode["id"]) == []
    assert rounds.vote_option_ids([o["id"] for o in options]) == []
    assert len(rounds.list_submissions(other["id"])) == 1

    state = store.read()
    assert state["current_phase"] == "SUBMIT"
    assert state["phase_expiry"] == T0 + schedule.duration_for("SUBMIT")


def test_full_cycle_is_monotonic(store, rounds, episode, fake_generator):
    store.create({
        "current_phase": "SUBMIT",
        "current_episode_id": episode["id"],
        "phase_expiry": T0,
    })
    add_submissions(rounds, episode["id"], 3)
    engine = make_engine(store, rounds, fake_generator)

    now = T0
    seen = []
    for _ in range(4):
        result = engine.tick(now)
        assert result["status"] == "Transitioned"
        seen.append((result["from"], result["to"]))
        assert result["phase_expiry"] == now + schedule.duration_for(result["to"])
        now = result["phase_expiry"]

    assert seen == [
        ("SUBMIT", "VOTE"),
        ("VOTE", "PROCESS"),
        ("PROCESS", "SUBMIT"),
        ("SUBMIT", "VOTE"),
    ]


def test_listen_with_due_expiry_moves_to_submit(store, rounds):
    store.create({"current_phase": "LISTEN", "phase_expiry": T0})

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == "Transitioned"
    assert result["to"] == "SUBMIT"
    assert store.read()["phase_expiry"] == T0 + schedule.duration_for("SUBMIT")


# ── Timer and lock handling ─────────────────────────────────


def test_waiting_before_expiry(store, rounds):
    expiry = T0 + timedelta(minutes=5)
    store.create({"current_phase": "SUBMIT", "phase_expiry": expiry})

    result = make_engine(store, rounds).tick(T0)

    assert result == {
        "ok": True, "status": "Waiting", "phase": "SUBMIT", "phase_expiry": expiry,
    }


@pytest.mark.parametrize("phase,expected", [
    ("LISTEN", "SUBMIT"),
    ("SUBMIT", "SUBMIT"),
    ("VOTE", "VOTE"),
    ("PROCESS", "PROCESS"),
])
def test_missing_expiry_initializes_timer(store, rounds, phase, expected):
    store.create({"current_phase": phase})

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == "Initialized"
    assert result["phase"] == expected
    state = store.read()
    assert state["current_phase"] == expected
    assert state["phase_expiry"] == T0 + schedule.duration_for(expected)
    assert state["is_transitioning"] is False


def test_stale_lock_is_recovered_without_transition(store, rounds):
    expiry = T0 - timedelta(minutes=50)
    store.create({
        "current_phase": "VOTE",
        "phase_expiry": expiry,
        "is_transitioning": True,
        "transitioning_since": T0 - timedelta(minutes=45),
    })

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == "Recovered stale transition lock"
    state = store.read()
    assert state["is_transitioning"] is False
    assert state["transitioning_since"] is None
    assert state["current_phase"] == "VOTE"
    assert state["phase_expiry"] == expiry


def test_lock_without_timestamp_counts_as_stale(store, rounds):
    store.create({
        "current_phase": "VOTE",
        "phase_expiry": T0,
        "is_transitioning": True,
    })

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == "Recovered stale transition lock"
    assert store.read()["is_transitioning"] is False


def test_fresh_lock_makes_tick_a_noop(store, rounds):
    since = T0 - timedelta(minutes=10)
    store.create({
        "current_phase": "SUBMIT",
        "phase_expiry": T0 - timedelta(minutes=1),
        "is_transitioning": True,
        "transitioning_since": since,
    })

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == "Transitioning"
    state = store.read()
    assert state["is_transitioning"] is True
    assert state["transitioning_since"] == since
    assert state["current_phase"] == "SUBMIT"


@pytest.mark.parametrize("age,expected", [
    (timedelta(minutes=30), "Recovered stale transition lock"),
    (timedelta(minutes=29, seconds=59), "Transitioning"),
])
def test_stale_threshold_is_inclusive(store, rounds, age, expected):
    store.create({
        "current_phase": "VOTE",
        "phase_expiry": T0 - timedelta(minutes=40),
        "is_transitioning": True,
        "transitioning_since": T0 - age,
    })

    result = make_engine(store, rounds).tick(T0)

    assert result["status"] == expected
    assert store.read()["is_transitioning"] is (expected == "Transitioning")


class ReentrantSynthesizer:
    """Fires a second tick while the first one holds the lock."""

    def __init__(self):
        self.engine = None
        self.inner_result = None

    def synthesize(self, episode_id):
        self.inner_result = self.engine.tick(T0 + timedelta(seconds=1))
        return [
            {"title": f"T{n}", "description": f"D{n}", "source_submission_ids": None}
            for n in range(3)
        ]


def test_overlapping_tick_cannot_claim_held_lock(store, rounds, episode):
    store.create({
        "current_phase": "SUBMIT",
        "current_episode_id": episode["id"],
        "phase_expiry": T0 - timedelta(seconds=1),
    })
    synthesizer = ReentrantSynthesizer()
    engine = make_engine(store, rounds, synthesizer=synthesizer)
    synthesizer.engine = engine

    result = engine.tick(T0)

    assert synthesizer.inner_result["status"] == "Transitioning"
    assert result["status"] == "Transitioned"
    assert store.read()["current_phase"] == "VOTE"
    assert len(rounds.list_options(episode["id"])) == 3


def test_missing_game_state_is_reported(store, rounds):
    ok, result = make_engine(store, rounds).run_tick(T0)
    assert ok is False
    assert result["ok"] is False
    assert "Game state not found" in result["error"]


def test_schema_without_lock_is_a_configuration_error(db, rounds):
    legacy = GameStateStore(db, columns=SupportedColumns(2))
    legacy.create({"current_phase": "SUBMIT"})

    with pytest.raises(ConfigurationError):
        make_engine(legacy, rounds).tick(T0)


# ── Failures while the lock is held ─────────────────────────


@pytest.mark.parametrize("phase,method", [
    ("SUBMIT", "replace_options"),
    ("PROCESS", "purge_round"),
])
def test_store_failure_mid_action_releases_lock(
    store, rounds, episode, fake_generator, phase, method
):
    expiry = T0 - timedelta(seconds=1)
    store.create({
        "current_phase": phase,
        "current_episode_id": episode["id"],
        "phase_expiry": expiry,
    })
    add_submissions(rounds, episode["id"], 3)
    engine = make_engine(store, rounds, fake_generator)

    with mock.patch.object(rounds, method, side_effect=RuntimeError("write refused")):
        ok, result = engine.run_tick(T0)

    assert ok is False
    assert result == {"ok": False, "error": "write refused"}
    state = store.read()
    assert state["current_phase"] == phase
    assert state["phase_expiry"] == expiry
    assert state["is_transitioning"] is False
    assert state["transitioning_since"] is None


class HijackingSynthesizer:
    """Simulates another tick recovering and re-claiming the lock mid-action."""

    def __init__(self, store, since):
        self.store = store
        self.since = since

    def synthesize(self, episode_id):
        self.store.force_update({"is_transitioning": True, "transitioning_since": self.since})
        return [
            {"title": f"T{n}", "description": f"D{n}", "source_submission_ids": None}
            for n in range(3)
        ]


def test_lost_lock_does_not_overwrite_new_holder(store, rounds, episode):
    store.create({
        "current_phase": "SUBMIT",
        "current_episode_id": episode["id"],
        "phase_expiry": T0 - timedelta(seconds=1),
    })
    other_since = T0 + timedelta(minutes=31)
    engine = make_engine(
        store, rounds, synthesizer=HijackingSynthesizer(store, other_since)
    )

    ok, result = engine.run_tick(T0)

    assert ok is False
    assert "recovered by another tick" in result["error"]
    state = store.read()
    assert state["current_phase"] == "SUBMIT"
    assert state["is_transitioning"] is True
    assert state["transitioning_since"] == other_since
