"""
Episode drafting.

Turns the winning path option into the next episode in three stages:
a five-scene Markdown beat sheet, prose drafted scene by scene from that
blueprint, and an optional rewrite tuned for text-to-speech narration.

Every stage reads the continuity header built from the story bible, so
character voices, the trust score and the story's limit stay canon.
"""

import logging
import re
import time
from typing import Callable, Dict, List, Optional, Sequence

from campfire.game.text_generation import TextGenerator, generate_text_with_fallback
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

SCENES_PER_EPISODE = 5
MIN_SCENE_WORDS = 380
MAX_SCENE_CONTINUATIONS = 4
MIN_EPISODE_WORDS = 1800
MAX_EPISODE_CONTINUATIONS = 4

_SCENE_HEADER_RE = re.compile(r"^##\s*SCENE\s+(\d+)\s*:\s*", re.IGNORECASE | re.MULTILINE)
_CHARACTERS_RE = re.compile(r"^\*\*Characters:\*\*\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_CAST_LINE_RE = re.compile(
    r"^-\s*([^(]+)\(([^)]*)\):\s*(.*?)\s*Key phrases:\s*(.*)$", re.IGNORECASE
)

MOMENTUM_REQUIREMENTS = """Forward momentum requirements (STRICT)
- Advance the story: make at least one irreversible change in the situation.
- OS progress: show a concrete step toward the Objective Story goal OR a measurable slide toward the Consequence.
- Driver/Limit: make the next beat feel like another turn of the Driver, increasing pressure toward the Limit.
- MC/IC pressure: include at least one moment where the Main Character is pushed by the Influence Character's impact.
- RS drift: adjust Relationship Story trust slightly (+1 or -1) via a specific interaction; reflect it in subtext."""


# ── Text helpers ─────────────────────────────────────────────────────────


def count_words(text: str) -> int:
    return len(text.split())


def last_words(text: str, count: int) -> str:
    return " ".join(text.split()[-count:])


def split_scene_blueprint(beat_sheet: str) -> Optional[List[str]]:
    """
    Cut a beat sheet at its ``## SCENE n:`` headers. Returns the first
    five scene chunks, or None when fewer than five can be found.
    """
    text = beat_sheet.strip()
    starts = [m.start() for m in _SCENE_HEADER_RE.finditer(text)]
    if len(starts) < 2:
        return None
    bounds = starts + [len(text)]
    scenes = [
        chunk for chunk in (text[a:b].strip() for a, b in zip(bounds, bounds[1:]))
        if chunk
    ]
    if len(scenes) < SCENES_PER_EPISODE:
        return None
    return scenes[:SCENES_PER_EPISODE]


def extract_canon_field(context: Optional[str], label: str) -> Optional[str]:
    """Value of the first ``<label>: value`` line in the continuity header."""
    if not context:
        return None
    match = re.search(rf"{re.escape(label)}:\s*([^\n]+)", context, re.IGNORECASE)
    value = match.group(1).strip() if match else ""
    return value or None


def parse_cast_voices(context: Optional[str]) -> Dict[str, Dict]:
    """Cast lines of the header's "Cast / Voice DNA" block, keyed by lowercase name."""
    voices: Dict[str, Dict] = {}
    if not context or "Cast / Voice DNA" not in context:
        return voices
    block = context[context.index("Cast / Voice DNA"):]
    for line in block.splitlines():
        match = _CAST_LINE_RE.match(line.strip())
        if not match:
            continue
        name = match.group(1).strip()
        if not name:
            continue
        voices[name.lower()] = {
            "role": match.group(2).strip(),
            "voice_dna": match.group(3).strip(),
            "key_phrases": [
                p.strip() for p in match.group(4).split("|")
                if p.strip() and p.strip() != "(none)"
            ],
        }
    return voices


def parse_scene_characters(scene: str) -> List[str]:
    match = _CHARACTERS_RE.search(scene)
    if not match:
        return []
    return [c.strip() for c in re.split(r"[,|/]", match.group(1)) if c.strip()]


def build_voice_context(characters: Sequence[str], context: Optional[str]) -> str:
    names: List[str] = []
    for name in characters:
        if name.strip() and name.strip() not in names:
            names.append(name.strip())
    if not names:
        return ""

    voices = parse_cast_voices(context)
    lines = []
    for name in names:
        voice = voices.get(name.lower())
        if not voice or (not voice["voice_dna"] and not voice["key_phrases"]):
            lines.append(
                f"{name}: (No voice DNA provided. Default to a clear, neutral, "
                "consistent voice; do not invent catchphrases.)"
            )
            continue
        phrases = (
            f" Key phrases: {' | '.join(voice['key_phrases'])}"
            if voice["key_phrases"] else ""
        )
        lines.append(f"{name}: {voice['voice_dna'] or '(voice DNA unspecified)'}{phrases}")
    return "CHARACTER VOICES (STRICT):\n" + "\n".join(lines)


# ── Prompts ──────────────────────────────────────────────────────────────


def build_beat_sheet_prompt(
    winning_text: str, context: str, contributors: Sequence[str]
) -> str:
    return (
        'You are a Showrunner acting as the "Architect".\n\n'
        f"Canon Packet (NCP + continuity): {context}\n"
        f"Winning Submission: {winning_text}\n"
        f"Contributors: {', '.join(contributors)}\n\n"
        "THEORY MODEL: VALUE TURNS\n"
        'Every scene must be an "Event" that causes a meaningful change in the '
        "life of a character. If the value charge does not change, the scene "
        "is cut.\n\n"
        "Format Requirements (STRICT):\n"
        "Use Markdown headers exactly like this, repeated for 5 scenes:\n\n"
        "## SCENE 1: [Title]\n"
        "**Characters:** [List]\n"
        "**Scene Goal:** [What does the protagonist of this scene WANT?]\n"
        "**The Conflict:** [What stands in their way?]\n"
        "**The Turn:** [Start Value] -> [End Value]\n"
        '**Attribution:** [Name of a Contributing Architect to credit, or "None"]\n'
        "**Action:** [Bullet points of the plot beats. Focus on CAUSE and EFFECT.]\n\n"
        "Content Rules:\n"
        "1. Scene 1 (Teaser): Must turn from Normalcy -> Inciting Incident.\n"
        "2. Scene 5 (Cliffhanger): Must turn from Resolution -> New Dilemma.\n"
        "3. Pacing: Prioritize EVENT DENSITY. Avoid traveling or waiting beats.\n"
        "4. Attribution: If the winning submission suggested a specific beat, "
        "include it.\n\n"
        "Output ONLY the 5-scene Markdown blueprint. No extra commentary."
    )


def build_scene_prompt(
    index: int,
    scene: str,
    previous_tail: str,
    context: Optional[str],
    trust_score: str,
    limit: str,
    voice_context: str,
) -> str:
    so_far = f"...{previous_tail}" if previous_tail else "(start of episode)"
    return (
        f"You are writing SCENE {index + 1} of {SCENES_PER_EPISODE}.\n\n"
        f"BLUEPRINT (The Turn):\n{scene}\n\n"
        f"STORY SO FAR: {so_far}\n"
        f"CONTEXT: {context or 'None'}\n"
        f"CANON LAWS: Trust Score: {trust_score}, Limit: {limit}\n"
        f"VOICE: {voice_context}\n\n"
        "NARRATIVE VELOCITY INSTRUCTIONS:\n"
        "1. No purple prose. Atmosphere matters only when it is dangerous.\n"
        "2. Verbs over adjectives.\n"
        "3. The scene MUST pivot on the Turn defined in the blueprint.\n"
        "4. Dialogue is action: deceive, attack, seduce or investigate.\n"
        "5. Audio-first: describe sounds of movement and impacts.\n\n"
        "Task:\nWrite the full scene (~400 words). End with a strong hook into "
        "the next scene.\n\nOutput ONLY the scene text."
    )


def build_scene_continuation_prompt(
    index: int, tail: str, scene: str, context: Optional[str], voice_context: str
) -> str:
    voices = f"{voice_context}\n\n" if voice_context else ""
    return (
        f"Continue writing SCENE {index + 1} of {SCENES_PER_EPISODE}.\n\n"
        f"STORY SO FAR (continue immediately from here):\n...{tail}\n\n"
        f"BLUEPRINT (must still satisfy):\n{scene}\n\n"
        "CANON PACKET (NCP + continuity; do not contradict):\n"
        f"{context or '(none)'}\n\n"
        f"{voices}"
        "TASK:\nAdd at least 200 more words continuing the same scene. Do not "
        "restart, recap or summarize. Do not output meta annotations.\n"
        "Output ONLY the continuation text."
    )


def build_single_pass_prompt(beat_sheet: str, context: Optional[str]) -> str:
    return (
        "You are writing the next episode narration for an interactive story "
        f"game.\n\nContext:\n{context or '(none)'}\n\n"
        f"{MOMENTUM_REQUIREMENTS}\n\n"
        f"Beat sheet:\n{beat_sheet}\n\n"
        "Task:\nWrite ~2,000 words of vivid prose narration that follows the "
        f"beat sheet (MINIMUM {MIN_EPISODE_WORDS} words).\n"
        "- Write dialogue, action and sensory details. Do NOT summarize.\n"
        "- Present tense preferred.\n"
        "- No bullet points or headings.\n"
        "- Output ONLY the prose."
    )


def build_single_pass_continuation_prompt(
    tail: str, beat_sheet: str, context: Optional[str]
) -> str:
    return (
        "Continue writing the episode.\n\n"
        f"STORY SO FAR (continue immediately from here):\n...{tail}\n\n"
        f"Context:\n{context or '(none)'}\n\n"
        f"Beat sheet:\n{beat_sheet}\n\n"
        "TASK:\nContinue the episode with at least 350 more words. Do NOT "
        "restart and do NOT recap.\nOutput ONLY the continuation prose."
    )


def build_narration_prompt(prose: str, context: Optional[str]) -> str:
    return (
        "You are a Voice Director for a cinematic audio drama.\n\n"
        "Context (do not change names or facts implied by this):\n"
        f"{context or '(none)'}\n\n"
        "Rewrite the input text for text-to-speech performance.\n\n"
        "FORMATTING RULES:\n"
        "1. No XML tags or any other markup.\n"
        "2. Pacing: ellipses for suspenseful pauses, double line breaks for "
        "long dramatic pauses, frequent commas for breathing room.\n"
        "3. Emphasis: never ALL CAPS; use exclamation marks sparingly.\n"
        "4. Action scenes get short clipped sentences; lore and mystery get "
        "flowing, slower sentences.\n"
        "5. Convert purely visual descriptions into auditory ones.\n\n"
        f"Input Text:\n{prose}\n\n"
        "Output ONLY the rewritten text. Do not use Markdown or headings."
    )


# ── Director ─────────────────────────────────────────────────────────────


class EpisodeDirector:
    """Drafts the next episode through the Gemini model tiers."""

    def __init__(
        self,
        generate: Optional[TextGenerator] = None,
        sleep: Callable[[float], None] = time.sleep,
        models: Optional[List[str]] = None,
    ) -> None:
        self._generate = generate
        self._sleep = sleep
        self._models = models or cfg.GEMINI_DIRECTOR_MODELS

    def _ask(self, prompt: str, label: str) -> str:
        return generate_text_with_fallback(
            self._models,
            prompt,
            label=label,
            generate=self._generate,
            sleep=self._sleep,
        ).strip()

    def beat_sheet(
        self, winning_text: str, context: str, contributors: Sequence[str] = ()
    ) -> str:
        return self._ask(
            build_beat_sheet_prompt(winning_text, context, contributors),
            "beat sheet",
        )

    def script(self, beat_sheet: str, context: Optional[str] = None) -> str:
        """
        Draft the episode prose. Scenes are written one at a time, each
        continued until it reaches ``MIN_SCENE_WORDS`` (or runs out of
        continuations); a blueprint that cannot be split is drafted in a
        single pass instead.
        """
        scenes = split_scene_blueprint(beat_sheet)
        if scenes is None:
            logger.info("Scene blueprint parse failed; drafting in a single pass")
            return self._single_pass(beat_sheet, context)

        trust_score = extract_canon_field(context, "Trust score") or "(unknown)"
        limit = extract_canon_field(context, "Limit") or "(unknown)"

        drafted: List[str] = []
        previous_tail = ""
        for index, scene in enumerate(scenes):
            voice_context = build_voice_context(parse_scene_characters(scene), context)
            text = self._ask(
                build_scene_prompt(
                    index, scene, previous_tail, context, trust_score, limit,
                    voice_context,
                ),
                f"scene {index + 1}",
            )
            for _ in range(MAX_SCENE_CONTINUATIONS):
                if count_words(text) >= MIN_SCENE_WORDS:
                    break
                extra = self._ask(
                    build_scene_continuation_prompt(
                        index, last_words(text, 150), scene, context, voice_context
                    ),
                    f"scene {index + 1} continuation",
                )
                text = f"{text}\n\n{extra}".strip()

            logger.info("Scene %d drafted: %d words", index + 1, count_words(text))
            drafted.append(text)
            previous_tail = last_words(text, 200)

        draft = "\n\n".join(drafted)
        logger.info("Episode draft complete: %d words", count_words(draft))
        return draft

    def _single_pass(self, beat_sheet: str, context: Optional[str]) -> str:
        text = self._ask(build_single_pass_prompt(beat_sheet, context), "draft")
        for _ in range(MAX_EPISODE_CONTINUATIONS):
            if count_words(text) >= MIN_EPISODE_WORDS:
                break
            extra = self._ask(
                build_single_pass_continuation_prompt(
                    last_words(text, 180), beat_sheet, context
                ),
                "draft continuation",
            )
            text = f"{text}\n\n{extra}".strip()
        return text

    def polish_for_narration(self, prose: str, context: Optional[str] = None) -> str:
        return self._ask(build_narration_prompt(prose, context), "narration polish")
