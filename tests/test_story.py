import copy
import json

import pytest

from campfire.database.profile_repository import ProfileRepository
from campfire.errors import StoryGenerationError, TextGenerationError
from campfire.game.continuity import build_continuity_header, format_bible_summary
from campfire.game.director import (
    EpisodeDirector,
    build_voice_context,
    split_scene_blueprint,
)
from campfire.game.genesis import (
    CampaignGenesis,
    coerce_bible,
    convert_story_form,
    parse_premises,
)
from campfire.game.story_manager import StoryManager
from conftest import BIBLE, EPISODE_ONE, FakeGenerator


def words(count):
    return " ".join(["ember"] * count)


def scene_sheet(scenes=5):
    return "\n\n".join(
        f"## SCENE {n}: Beat {n}\n**Characters:** Zora, Kell\n**Action:** things happen"
        for n in range(1, scenes + 1)
    )


def quiet(generate):
    return {"generate": generate, "sleep": lambda seconds: None}


# ── Bible validation ────────────────────────────────────────


def test_coerce_bible_accepts_complete_answer():
    bible = coerce_bible(copy.deepcopy(BIBLE))
    assert bible["main_character"]["name"] == "Zora"
    assert bible["relationship_story"]["trust_score"] == 42
    assert bible["cast"]["Zora"]["key_phrases"] == ["Eyes up"]


@pytest.mark.parametrize("mutate,message", [
    (lambda b: b["main_character"].update(domain="Physics"), "unique"),
    (lambda b: b["relationship_story"].update(trust_score=140), "trust_score"),
    (lambda b: b["influence_character"].update(domain="Dream"), "must be one of"),
    (lambda b: b.pop("inventory"), "inventory"),
    (lambda b: b["objective_story"].update(goal="  "), "objective_story.goal"),
])
def test_coerce_bible_rejects_broken_answers(mutate, message):
    bible = copy.deepcopy(BIBLE)
    mutate(bible)
    with pytest.raises(ValueError, match=message):
        coerce_bible(bible)


def test_story_form_answer_is_converted_with_unique_domains():
    bible = convert_story_form(
        {
            "storyForm": {"overallStoryDomain": "Mind", "mainCharacterDomain": "Mind"},
            "plot": {"driver": "Decision"},
        },
        genre="Fantasy",
        premise="A burnt world",
    )
    domains = [bible[t]["domain"] for t in (
        "objective_story", "main_character", "influence_character", "relationship_story",
    )]
    assert domains[0] == "Mind"
    assert len(set(domains)) == 4
    assert bible["driver"] == "Decision"
    assert bible["active_facts"] == ["A burnt world"]
    assert convert_story_form({"title": "nope"}, "Fantasy", "p") is None


def test_parse_premises_requires_three():
    assert parse_premises('["a", " b ", "c"]') == ["a", "b", "c"]
    with pytest.raises(ValueError, match="exactly 3 premises"):
        parse_premises('["a", "b"]')


# ── Genesis pipeline ────────────────────────────────────────


def test_bible_is_repaired_after_a_malformed_answer():
    generator = FakeGenerator("not json at all", json.dumps(BIBLE))

    bible = CampaignGenesis(**quiet(generator)).bible("Fantasy", "A burnt world", "Grim")

    assert bible["main_character"]["name"] == "Zora"
    assert len(generator.calls) == 2
    assert "Input JSON to convert" in generator.calls[1][1]


def test_bible_gives_up_after_failed_repair():
    generator = FakeGenerator('{"objective_story": {}}')
    with pytest.raises(StoryGenerationError, match="First pass"):
        CampaignGenesis(**quiet(generator)).bible("Fantasy", "p", "Grim")


def test_episode_one_falls_back_on_quota_errors():
    generator = FakeGenerator(RuntimeError("429 Too Many Requests"))

    text = CampaignGenesis(**quiet(generator)).episode_one(
        coerce_bible(copy.deepcopy(BIBLE)), "Fantasy", "A burnt world", "Grim"
    )

    assert "Zora" in text
    assert "A burnt world" in text


def test_episode_one_surfaces_other_failures():
    generator = FakeGenerator(RuntimeError("model exploded"))
    with pytest.raises(TextGenerationError, match="model exploded"):
        CampaignGenesis(**quiet(generator)).episode_one(
            coerce_bible(copy.deepcopy(BIBLE)), "Fantasy", "p", "Grim"
        )


# ── Continuity header ───────────────────────────────────────


def test_header_exposes_canon_fields_the_director_reads():
    header = build_continuity_header(
        BIBLE,
        [{"season_num": 1, "episode_num": 1, "title": "Ashfall", "narrative_text": EPISODE_ONE}],
        "Burn the bridge",
        "Cut off the pursuers",
        ["alice"],
    )
    assert "- Trust score: 42" in header
    assert "- Limit: Timelock" in header
    assert "- Zora (Protagonist): Gruff, clipped. Key phrases: Eyes up" in header
    assert "- Title: Burn the bridge" in header
    assert "architects: alice." in header
    assert "S1E1: Ashfall" in header


def test_summary_tolerates_sparse_bibles():
    summary = format_bible_summary({"cast": {}})
    assert "- Goal: (unknown)" in summary
    assert "Cast / Voice DNA" not in summary


# ── Director ────────────────────────────────────────────────


def test_split_scene_blueprint_needs_five_scenes():
    assert len(split_scene_blueprint(scene_sheet(6))) == 5
    assert split_scene_blueprint(scene_sheet(4)) is None
    assert split_scene_blueprint("no headers here") is None


def test_voice_context_uses_cast_lines_from_header():
    context = build_continuity_header(BIBLE, [], "t", "d")
    voices = build_voice_context(["Zora", "Kell", "Zora"], context)
    assert "Zora: Gruff, clipped. Key phrases: Eyes up" in voices
    assert "Kell: (No voice DNA provided" in voices
    assert voices.count("Zora:") == 1


def test_script_drafts_each_scene_and_continues_short_ones():
    generator = FakeGenerator(words(100), words(400))
    context = build_continuity_header(BIBLE, [], "t", "d")

    script = EpisodeDirector(**quiet(generator)).script(scene_sheet(), context)

    # Scene 1 needed one continuation; scenes 2-5 were long enough
    assert len(generator.calls) == 6
    assert "Continue writing SCENE 1" in generator.calls[1][1]
    assert "Trust Score: 42, Limit: Timelock" in generator.calls[0][1]
    assert len(script.split()) == 100 + 400 * 5


def test_script_falls_back_to_single_pass():
    generator = FakeGenerator(words(1000))

    script = EpisodeDirector(**quiet(generator)).script("Just do something dramatic.")

    assert len(generator.calls) == 2
    assert "Continue writing the episode" in generator.calls[1][1]
    assert len(script.split()) == 2000


def test_narration_polish_returns_trimmed_text():
    generator = FakeGenerator("  The hum dies... into silence.  ")
    text = EpisodeDirector(**quiet(generator)).polish_for_narration("The light faded.")
    assert text == "The hum dies... into silence."
    assert "The light faded." in generator.calls[0][1]


# ── Story manager ───────────────────────────────────────────


def test_ignite_campaign_stores_generated_bible_and_episode(db, store, episodes):
    generator = FakeGenerator(json.dumps(BIBLE), EPISODE_ONE)

    success, response = StoryManager(db, **quiet(generator)).ignite_campaign(
        "Ashes", "Fantasy", "Grim", "A burnt world"
    )

    assert success is True
    state = store.read()
    assert state["current_phase"] == "LISTEN"
    assert state["current_series_bible_id"] == response["bible_id"]
    episode = episodes.get_episode(response["episode_id"])
    assert episode["narrative_text"] == EPISODE_ONE
    bible = episodes.get_series_bible(response["bible_id"])
    assert bible["bible_json"]["influence_character"]["name"] == "Kell"


def test_ignite_campaign_reports_generation_failure(db, store):
    generator = FakeGenerator(RuntimeError("model exploded"))

    success, response = StoryManager(db, **quiet(generator)).ignite_campaign(
        "Ashes", "Fantasy", "Grim", "A burnt world"
    )

    assert success is False
    assert "model exploded" in response["message"]
    assert store.read() is None


def test_oracle_premises_validates_input(db):
    generator = FakeGenerator('["one", "two", "three"]')
    story = StoryManager(db, **quiet(generator))

    assert story.oracle_premises(" ", "Grim")[0] is False
    success, response = story.oracle_premises("Fantasy", "Grim", title="Ashes")
    assert success is True
    assert response["premises"] == ["one", "two", "three"]
    assert "Working title: Ashes" in generator.calls[0][1]


def test_continuity_header_requires_a_bible(db):
    success, response = StoryManager(db).continuity_header("t", "d")
    assert success is False
    assert response["message"] == "No active story bible found. Start a campaign first."


def test_continuity_header_credits_named_contributors(db, rounds, episodes):
    story = StoryManager(db)
    _, started = story.admin.start_campaign(
        title="Ashes", genre="Fantasy", tone="Grim", premise="p",
        narrative_text=EPISODE_ONE, bible_json=BIBLE,
    )
    episodes.create_episode("Crossing", "They reach the river.", 1, 2)
    ProfileRepository(db).upsert_profile("alice-id", username="alice")
    named = rounds.create_submission(started["episode_id"], "alice-id", "burn it")
    anonymous = rounds.create_submission(started["episode_id"], "ghost-id", "run")
    option = rounds.replace_options(started["episode_id"], [{
        "title": "Burn", "description": "Burn the bridge",
        "source_submission_ids": [named["id"], anonymous["id"]],
    }])[0]

    success, response = story.continuity_header("Burn", "Burn the bridge", option["id"])

    assert success is True
    header = response["header"]
    assert "architects: alice." in header
    assert "ghost" not in header
    # Episode 1 comes first, then the newest episodes
    assert header.index("S1E1: Ashes: Episode 1") < header.index("S1E2: Crossing")
    assert header.count("S1E1:") == 1
