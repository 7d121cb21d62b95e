from datetime import timedelta
from unittest import mock

import pytest

from campfire.errors import ConcurrentUpdateError
from campfire.game.manager import GameManager
from commons import utcnow


@pytest.fixture
def manager(db):
    return GameManager(db)


def open_phase(store, phase, episode_id, minutes=10):
    store.create({
        "current_phase": phase,
        "current_episode_id": episode_id,
        "phase_expiry": utcnow() + timedelta(minutes=minutes),
    })


def three_options(rounds, episode_id):
    return rounds.replace_options(episode_id, [
        {"title": t, "description": t.lower()} for t in ("A", "B", "C")
    ])


# ── submit_idea ─────────────────────────────────────────────


def test_submit_idea_during_submit(manager, store, rounds, episode):
    open_phase(store, "SUBMIT", episode["id"])

    success, response = manager.submit_idea("user-1", "  Burn the bridge  ")

    assert success is True
    assert response["submission"]["content_text"] == "Burn the bridge"
    assert response["submission"]["heat"] == 0
    stored = rounds.list_submissions(episode["id"])
    assert len(stored) == 1
    assert stored[0]["user_id"] == "user-1"
    assert stored[0]["is_synthetic"] is False


@pytest.mark.parametrize("phase,minutes,text,message", [
    ("VOTE", 10, "idea", "Submissions are not open."),
    ("SUBMIT", -1, "idea", "Submissions have closed."),
    ("SUBMIT", 10, "   ", "Please enter a submission."),
    ("SUBMIT", 10, "x" * 281, "Submissions are limited to 280 characters."),
])
def test_submit_idea_rejections(manager, store, rounds, episode, phase, minutes, text, message):
    open_phase(store, phase, episode["id"], minutes)

    success, response = manager.submit_idea("user-1", text)

    assert success is False
    assert response["message"] == message
    assert rounds.list_submissions(episode["id"]) == []


def test_submit_idea_without_episode(manager, store):
    open_phase(store, "SUBMIT", None)
    success, response = manager.submit_idea("user-1", "idea")
    assert success is False
    assert response["message"] == "No active episode."


# ── boost_submission ────────────────────────────────────────


def test_boost_submission_increments_heat(manager, rounds, episode):
    submission = rounds.create_submission(episode["id"], "user-1", "idea")

    manager.boost_submission(submission["id"])
    success, response = manager.boost_submission(submission["id"])

    assert success is True
    assert response["heat"] == 2
    assert rounds.get_submission(submission["id"])["heat"] == 2


def test_boost_missing_submission(manager):
    success, response = manager.boost_submission("nope")
    assert success is False
    assert response["message"] == "Submission not found."


def test_bump_heat_gives_up_after_retries(rounds, episode):
    submission = rounds.create_submission(episode["id"], "user-1", "idea")
    lost = mock.Mock(matched_count=0)

    with mock.patch.object(rounds._submissions, "update_one", return_value=lost) as update:
        with pytest.raises(ConcurrentUpdateError):
            rounds.bump_heat(submission["id"], max_retries=3, backoff_seconds=0)

    assert update.call_count == 3


def test_boost_reports_contention(manager, episode):
    with mock.patch.object(
        manager.rounds, "bump_heat", side_effect=ConcurrentUpdateError("busy")
    ):
        success, response = manager.boost_submission("any")
    assert success is False
    assert "Try again" in response["message"]


# ── cast_vote ───────────────────────────────────────────────


def test_cast_vote_accepted(manager, store, rounds, episode):
    open_phase(store, "VOTE", episode["id"])
    options = three_options(rounds, episode["id"])

    success, response = manager.cast_vote("user-1", options[0]["id"])

    assert success is True
    assert rounds.vote_option_ids([options[0]["id"]]) == [options[0]["id"]]


def test_cast_vote_outside_vote_phase(manager, store, rounds, episode):
    open_phase(store, "SUBMIT", episode["id"])
    options = three_options(rounds, episode["id"])

    success, response = manager.cast_vote("user-1", options[0]["id"])

    assert success is False
    assert response["message"] == "Voting is not open."


def test_cast_vote_after_expiry(manager, store, rounds, episode):
    open_phase(store, "VOTE", episode["id"], minutes=-1)
    options = three_options(rounds, episode["id"])

    success, response = manager.cast_vote("user-1", options[0]["id"])

    assert success is False
    assert response["message"] == "Voting has closed."
    assert rounds.vote_option_ids([o["id"] for o in options]) == []


def test_cast_vote_for_other_episode_is_invalid(manager, store, rounds, episodes, episode):
    open_phase(store, "VOTE", episode["id"])
    old = episodes.create_episode("Old", "...", 1, 2)
    stale_options = three_options(rounds, old["id"])

    success, response = manager.cast_vote("user-1", stale_options[0]["id"])

    assert success is False
    assert response["message"] == "This vote is no longer valid."
    assert rounds.vote_option_ids([o["id"] for o in stale_options]) == []


def test_cast_vote_twice_for_same_option(manager, store, rounds, episode):
    open_phase(store, "VOTE", episode["id"])
    options = three_options(rounds, episode["id"])

    manager.cast_vote("user-1", options[0]["id"])
    success, response = manager.cast_vote("user-1", options[0]["id"])

    assert success is False
    assert response["message"] == "You have already voted for this option."


# ── get_game_info ───────────────────────────────────────────


def test_game_info_includes_counts_and_hot_submissions(manager, store, rounds, episode):
    open_phase(store, "VOTE", episode["id"])
    options = three_options(rounds, episode["id"])
    rounds.insert_vote("user-1", options[1]["id"])
    cold = rounds.create_submission(episode["id"], "user-1", "cold idea")
    hot = rounds.create_submission(episode["id"], "user-2", "hot idea")
    rounds.bump_heat(hot["id"])

    success, info = manager.get_game_info()

    assert success is True
    assert info["phase"] == "VOTE"
    assert info["episode"]["id"] == episode["id"]
    assert [o["vote_count"] for o in info["options"]] == [0, 1, 0]
    assert [s["id"] for s in info["submissions"]] == [hot["id"], cold["id"]]


def test_game_info_without_state(manager):
    success, response = manager.get_game_info()
    assert success is False
    assert response["message"] == "Game state unavailable."
