"""
Campaign genesis.

Asks Gemini for premise ideas and for the structured story bible that
anchors every later episode, then drafts Episode 1 from that bible.

Bible output is validated field by field. A malformed answer gets one
conversion pass (models sometimes answer with a nested ``storyForm``
shape) and one repair prompt before genesis gives up.
"""

import json
import logging
import math
import time
from typing import Callable, Dict, List, Optional, Tuple

from campfire.errors import StoryGenerationError, TextGenerationError
from campfire.game.text_generation import (
    TextGenerator,
    generate_text_with_fallback,
    parse_json_array,
    parse_json_object,
    strip_json_fence,
)
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

DOMAINS = ("Universe", "Physics", "Psychology", "Mind")

THROUGHLINES = (
    "objective_story",
    "main_character",
    "influence_character",
    "relationship_story",
)

# Required string fields per throughline (besides ``domain``)
_THROUGHLINE_FIELDS = {
    "objective_story": (
        "concern", "issue", "problem", "solution", "goal", "consequence",
    ),
    "main_character": (
        "name", "resolve", "growth", "approach", "crucial_flaw",
    ),
    "influence_character": ("name", "unique_ability", "impact"),
    "relationship_story": ("dynamic", "catalyst"),
}

_DYNAMICS = ("driver", "limit", "outcome", "judgment")

PREMISE_COUNT = 3
EPISODE_ONE_MIN_CHARS = 20

_QUOTA_MARKERS = (
    "429",
    "too many requests",
    "quota exceeded",
    "resource_exhausted",
    "resource exhausted",
)


def is_quota_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _QUOTA_MARKERS)


# ── Prompts ──────────────────────────────────────────────────────────────


def build_premises_prompt(genre: str, tone: str, title: Optional[str] = None) -> str:
    working_title = f"- Working title: {title}\n" if title else ""
    return (
        "Generate 3 short, irony-laden campaign premises for a serialized "
        "interactive story.\n\n"
        "Constraints:\n"
        f"- Genre: {genre}\n"
        f"- Tone: {tone}\n"
        f"{working_title}"
        "- Each premise should be 1-2 sentences.\n"
        "- Make them high-concept with a twist of irony.\n\n"
        "Return ONLY valid JSON: an array of exactly 3 strings."
    )


_BIBLE_SHAPE = """{
  "objective_story": {"domain", "concern", "issue", "problem", "solution", "goal", "consequence"},
  "main_character": {"name", "domain", "resolve": "Change"|"Steadfast", "growth": "Start"|"Stop", "approach": "Do-er"|"Be-er", "crucial_flaw"},
  "influence_character": {"name", "domain", "unique_ability", "impact"},
  "relationship_story": {"domain", "dynamic", "trust_score": 0-100, "catalyst"},
  "cast": {"<character name>": {"role", "voice_dna", "key_phrases": [string]}},
  "driver": "Action"|"Decision",
  "limit": "Timelock"|"Optionlock",
  "outcome": "Success"|"Failure",
  "judgment": "Good"|"Bad",
  "active_facts": [string],
  "inventory": [string]
}
Every domain is one of Universe, Physics, Psychology, Mind. "cast" is optional."""


def build_bible_prompt(genre: str, tone: str, premise: str) -> str:
    return (
        "You are a Dramatica Theory Expert. Construct a complete Grand "
        "Argument Story based on the user's premise.\n"
        "1. Assign the 4 Domains (Universe, Physics, Psychology, Mind) with "
        "no duplicates across throughlines.\n"
        "2. Select the Dynamics (Driver, Limit, Resolve) that fit the "
        "Genre and Tone.\n"
        "3. Identify the Root Problem and Solution elements.\n\n"
        f"Input:\n- Genre: {genre}\n- Tone: {tone}\n- Premise: {premise}\n\n"
        f"Return ONLY valid JSON with exactly this shape:\n{_BIBLE_SHAPE}\n\n"
        "Do NOT return wrapper keys like storyForm or plot. "
        "Do not wrap in markdown."
    )


def build_repair_prompt(genre: str, tone: str, premise: str, raw_json: str) -> str:
    return (
        "Convert the following JSON into EXACTLY this shape (output ONLY "
        f"valid JSON, no markdown, no extra keys):\n{_BIBLE_SHAPE}\n\n"
        "Rules:\n"
        "- Preserve any domains, problems and solutions already present.\n"
        "- The four throughline domains must all be different.\n"
        "- trust_score must be an integer 0-100.\n"
        "- Invent missing fields consistently with the Genre, Tone and "
        "Premise.\n\n"
        f"Context:\n- Genre: {genre}\n- Tone: {tone}\n- Premise: {premise}\n\n"
        f"Input JSON to convert:\n{raw_json}"
    )


def build_episode_one_prompt(bible: Dict) -> str:
    return (
        "Using this Storyform, write Episode 1 (The Inciting Incident). If "
        "driver is 'Action', start with an event. If driver is 'Decision', "
        "start with a choice.\n\n"
        f"Storyform JSON:\n{json.dumps(bible)}\n\n"
        "Constraints:\n"
        "- Write in present tense.\n"
        "- ~250-400 words.\n"
        "- No headings.\n"
        "- Output ONLY the prose."
    )


# ── Parsing and validation ───────────────────────────────────────────────


def parse_premises(raw: str) -> List[str]:
    premises = [
        item.strip() for item in parse_json_array(raw)
        if isinstance(item, str) and item.strip()
    ]
    if len(premises) != PREMISE_COUNT:
        raise ValueError(f"AI must return exactly {PREMISE_COUNT} premises.")
    return premises


def _invalid(expected: str, path: str) -> ValueError:
    return ValueError(f"Invalid storyform JSON: expected {expected} at {path}.")


def _require_record(value, path: str) -> Dict:
    if not isinstance(value, dict):
        raise _invalid("object", path)
    return value


def _require_string(value, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise _invalid("string", path)
    return value.strip()


def _require_number(value, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _invalid("number", path)
    if not math.isfinite(value):
        raise _invalid("number", path)
    return value


def _require_strings(value, path: str) -> List[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise _invalid("string[]", path)
    return [v.strip() for v in value if v.strip()]


def _require_domain(value, path: str) -> str:
    domain = _require_string(value, path)
    if domain not in DOMAINS:
        raise ValueError(
            f"Invalid storyform JSON: domain at {path} must be one of "
            f"{', '.join(DOMAINS)}."
        )
    return domain


def _coerce_cast(raw) -> Dict[str, Dict]:
    """Keep cast entries that carry at least a role, voice or phrase."""
    if not isinstance(raw, dict):
        return {}
    cast = {}
    for name, profile in raw.items():
        name = str(name).strip()
        if not name or not isinstance(profile, dict):
            continue
        role = profile.get("role")
        voice_dna = profile.get("voice_dna")
        phrases = profile.get("key_phrases")
        entry = {
            "role": role.strip() if isinstance(role, str) else "",
            "voice_dna": voice_dna.strip() if isinstance(voice_dna, str) else "",
            "key_phrases": [
                p.strip() for p in phrases if isinstance(p, str) and p.strip()
            ] if isinstance(phrases, list) else [],
        }
        if entry["role"] or entry["voice_dna"] or entry["key_phrases"]:
            cast[name] = entry
    return cast


def validate_bible(bible: Dict) -> Dict:
    domains = [bible[t]["domain"] for t in THROUGHLINES]
    if len(set(domains)) != len(THROUGHLINES):
        raise ValueError(
            "Invalid storyform: throughline domains must be unique across "
            "OS/MC/IC/RS."
        )
    trust = bible["relationship_story"]["trust_score"]
    if not 0 <= trust <= 100:
        raise ValueError(
            "Invalid storyform: relationship_story.trust_score must be "
            "between 0 and 100."
        )
    return bible


def coerce_bible(parsed) -> Dict:
    """Build a clean bible from parsed model output. Raises ValueError."""
    root = _require_record(parsed, "root")
    bible: Dict = {}
    for throughline in THROUGHLINES:
        section = _require_record(root.get(throughline), throughline)
        out = {"domain": _require_domain(section.get("domain"), f"{throughline}.domain")}
        for field in _THROUGHLINE_FIELDS[throughline]:
            out[field] = _require_string(section.get(field), f"{throughline}.{field}")
        bible[throughline] = out

    bible["relationship_story"]["trust_score"] = _require_number(
        root["relationship_story"].get("trust_score"),
        "relationship_story.trust_score",
    )
    for field in _DYNAMICS:
        bible[field] = _require_string(root.get(field), field)
    bible["active_facts"] = _require_strings(root.get("active_facts"), "active_facts")
    bible["inventory"] = _require_strings(root.get("inventory"), "inventory")

    cast = _coerce_cast(root.get("cast"))
    if cast:
        bible["cast"] = cast
    return validate_bible(bible)


def normalize_domains(domains: List[str]) -> List[str]:
    """Four unique domains: the valid ones given, then the rest in order."""
    picked: List[str] = []
    for domain in list(domains) + list(DOMAINS):
        if domain in DOMAINS and domain not in picked:
            picked.append(domain)
    return picked[:len(THROUGHLINES)]


def convert_story_form(parsed, genre: str, premise: str) -> Optional[Dict]:
    """
    Map a ``{"storyForm": {...}, "plot": {...}}`` answer onto the bible
    shape, filling what it lacks with neutral defaults. Returns None for
    any other shape.
    """
    if not isinstance(parsed, dict):
        return None
    story_form = parsed.get("storyForm", parsed.get("story_form"))
    if not isinstance(story_form, dict):
        return None
    plot = parsed.get("plot") if isinstance(parsed.get("plot"), dict) else {}

    def pick(key: str, default: str) -> str:
        value = story_form.get(key)
        return value.strip() if isinstance(value, str) and value.strip() else default

    domains = normalize_domains([
        story_form.get("overallStoryDomain"),
        story_form.get("mainCharacterDomain"),
        story_form.get("influenceCharacterDomain"),
        story_form.get("relationshipStoryDomain"),
    ])
    driver = plot.get("driver", parsed.get("driver"))
    limit = plot.get("limit", parsed.get("limit"))

    bible = {
        "objective_story": {
            "domain": domains[0],
            "concern": f"{genre.strip()}: a shared pursuit with escalating stakes",
            "issue": "Responsibility",
            "problem": pick("overallStoryProblem", "Uncontrolled"),
            "solution": pick("overallStorySolution", "Control"),
            "goal": "Secure the objective before a rival can claim it",
            "consequence": "The world hardens into a worse version of the current order",
        },
        "main_character": {
            "name": "The Protagonist",
            "domain": domains[1],
            "resolve": "Change",
            "growth": "Start",
            "approach": "Do-er",
            "crucial_flaw": pick("mainCharacterProblem", "Logic"),
        },
        "influence_character": {
            "name": "The Catalyst",
            "domain": domains[2],
            "unique_ability": "They force clarity by refusing comforting lies",
            "impact": "They pressure the protagonist to act before they feel ready",
        },
        "relationship_story": {
            "domain": domains[3],
            "dynamic": "Uneasy Allies",
            "trust_score": 50,
            "catalyst": "A revelation that redefines what each person wants",
        },
        "driver": "Decision" if driver == "Decision" else "Action",
        "limit": "Timelock" if limit == "Timelock" else "Optionlock",
        "outcome": "Success",
        "judgment": "Good",
        "active_facts": [premise.strip()] if premise.strip() else [],
        "inventory": [],
    }
    return validate_bible(bible)


def fallback_episode_one(bible: Dict, genre: str, premise: str, tone: str) -> str:
    """A templated opening used when the model is out of quota."""
    hero = bible["main_character"]["name"]
    catalyst = bible["influence_character"]["name"]
    goal = bible["objective_story"]["goal"]
    consequence = bible["objective_story"]["consequence"]
    dynamic = bible["relationship_story"]["dynamic"]
    opener = (
        "The first sign arrives without warning, and it is unmistakably real."
        if bible["driver"] == "Action"
        else "It starts with a choice that should be simple, until it isn't."
    )
    return "\n\n".join([
        opener,
        f"{hero} has lived inside this situation long enough for it to feel "
        f"normal: {premise.strip()}. Tonight the pattern breaks, and the "
        f"pressure around one goal ({goal}) tightens like a knot.",
        f"{catalyst} arrives at exactly the wrong moment, carrying the kind "
        f"of certainty that makes people dangerous. Between them the "
        f"relationship is already in motion ({dynamic}), and small words land "
        f"like sparks near dry tinder.",
        f"The tone is {tone.strip()} and the genre is {genre.strip()}, but the "
        f"stakes are concrete: fail, and {consequence}.",
        f"{hero} makes the first move. It does not work the way {hero} "
        f"expects, and by the time the night is over there is no unchosen "
        f"path left.",
    ])


# ── Genesis pipeline ─────────────────────────────────────────────────────


class CampaignGenesis:
    """Model-backed campaign setup: premises, story bible and Episode 1."""

    def __init__(
        self,
        generate: Optional[TextGenerator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._generate = generate
        self._sleep = sleep

    def _ask(self, prompt: str, label: str) -> str:
        return generate_text_with_fallback(
            cfg.GEMINI_GENESIS_MODELS,
            prompt,
            label=f"genesis {label}",
            generate=self._generate,
            sleep=self._sleep,
        )

    def premises(self, genre: str, tone: str, title: Optional[str] = None) -> List[str]:
        return parse_premises(
            self._ask(build_premises_prompt(genre, tone, title), "premises")
        )

    def bible(self, genre: str, premise: str, tone: str) -> Dict:
        raw = self._ask(build_bible_prompt(genre, tone, premise), "bible")
        try:
            return coerce_bible(parse_json_object(raw))
        except ValueError as first_error:
            logger.warning("Bible output rejected: %s", first_error)
            try:
                converted = convert_story_form(parse_json_object(raw), genre, premise)
            except ValueError:
                converted = None
            if converted is not None:
                logger.info("Bible recovered from a storyForm-shaped answer")
                return converted

            repaired = self._ask(
                build_repair_prompt(genre, tone, premise, strip_json_fence(raw)),
                "bible repair",
            )
            try:
                return coerce_bible(parse_json_object(repaired))
            except ValueError as second_error:
                raise StoryGenerationError(
                    "Genesis storyform generation failed. "
                    f"First pass: {first_error} Second pass: {second_error}"
                ) from second_error

    def episode_one(self, bible: Dict, genre: str, premise: str, tone: str) -> str:
        try:
            text = self._ask(build_episode_one_prompt(bible), "episode 1").strip()
        except TextGenerationError as exc:
            if not is_quota_error(exc):
                raise
            logger.warning("Episode 1 hit the model quota; using templated opening")
            text = fallback_episode_one(bible, genre, premise, tone)
        if len(text) <= EPISODE_ONE_MIN_CHARS:
            raise StoryGenerationError("Episode 1 generation failed.")
        return text

    def ignite(self, genre: str, premise: str, tone: str) -> Tuple[Dict, str]:
        """Story bible plus Episode 1 prose for a new campaign."""
        bible = self.bible(genre, premise, tone)
        return bible, self.episode_one(bible, genre, premise, tone)
