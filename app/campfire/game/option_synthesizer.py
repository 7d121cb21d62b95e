"""
Path option synthesis.

Turns the free-text submissions of a round into exactly three voting
options by asking Gemini to group them into distinct narrative paths.
The model's answer is validated strictly; anything other than three
well-formed options is an OptionSynthesisError. This module does not
degrade on its own: the transition engine owns the extractive fallback.
"""

import logging
import math
import time
from typing import Callable, Dict, List, Optional

from campfire.database.round_repository import RoundRepository
from campfire.errors import ConfigurationError, OptionSynthesisError
from campfire.game.constants import OPTIONS_PER_ROUND
from campfire.game.text_generation import (
    TextGenerator,
    generate_text_with_fallback,
    is_transient_error,
    parse_json_array,
)
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()


# ── Input preparation ────────────────────────────────────────────────────


def clean_submissions(submissions: List[Dict]) -> List[Dict]:
    """Trimmed ``{id, text, is_synthetic}`` for each non-empty submission."""
    cleaned = []
    for submission in submissions:
        text = (submission.get("content_text") or "").strip()
        if not submission.get("id") or not text:
            continue
        cleaned.append({
            "id": submission["id"],
            "text": text,
            "is_synthetic": bool(submission.get("is_synthetic")),
        })
    return cleaned


def build_prompt(submissions: List[Dict]) -> str:
    numbered = "\n".join(
        f"{index}. {s['text']}" for index, s in enumerate(submissions, start=1)
    )
    return (
        "Analyze these user suggestions for the next story beat. Group them "
        "into 3 distinct, mutually exclusive, high-conflict narrative paths. "
        "The paths must contrast sharply with one another.\n\n"
        'For each path, provide a short "title" (e.g., "Attack the Guard") '
        'and a "description" (e.g., "Overpower him before he sounds the '
        'alarm").\n\n'
        "CRITICAL:\n"
        '- You MUST include a key "source_indices" for each option.\n'
        '- "source_indices" must be an array of integers referencing the '
        "numbered user suggestions that inspired the option.\n"
        f"- Only use numbers from 1 to {len(submissions)}.\n\n"
        "Output JSON as an array of exactly 3 objects, each with keys: "
        "title, description, source_indices.\n\n"
        f"User suggestions:\n{numbered}"
    )


# ── Output validation ────────────────────────────────────────────────────


def _first_present(item: Dict, *keys):
    for key in keys:
        if key in item:
            return item[key]
    return None


def _parse_indices(raw) -> Optional[List[int]]:
    if not isinstance(raw, list):
        return None
    indices = []
    for value in raw:
        if isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(number):
            continue
        index = math.floor(number)
        if index >= 1:
            indices.append(index)
    return indices


def parse_option_drafts(raw: str) -> List[Dict]:
    """
    Validate model output: a JSON array of exactly three objects with
    non-empty string title and description, plus optional 1-based
    ``source_indices``.
    """
    try:
        parsed = parse_json_array(raw)
    except ValueError as exc:
        raise OptionSynthesisError(str(exc)) from exc

    if len(parsed) != OPTIONS_PER_ROUND:
        raise OptionSynthesisError("AI must return exactly 3 options.")

    drafts = []
    for item in parsed:
        if not isinstance(item, dict):
            raise OptionSynthesisError("Each AI option must be a JSON object.")
        title = _first_present(item, "title", "Title")
        description = _first_present(item, "description", "Description")
        if not isinstance(title, str) or not isinstance(description, str):
            raise OptionSynthesisError(
                "Each AI option needs a title and description string."
            )
        title, description = title.strip(), description.strip()
        if not title or not description:
            raise OptionSynthesisError(
                "Each AI option needs a non-empty title and description."
            )
        drafts.append({
            "title": title,
            "description": description,
            "source_indices": _parse_indices(
                _first_present(
                    item, "source_indices", "sourceIndices", "SourceIndices"
                )
            ),
        })
    return drafts


def map_attribution(drafts: List[Dict], submissions: List[Dict]) -> List[Dict]:
    """
    Replace 1-based ``source_indices`` with submission ids.

    Out-of-range indices and repeated ids are dropped; an option left
    without ids gets ``None``. When every submission is synthetic, every
    option gets ``[]`` so no bot-written text is credited.
    """
    all_synthetic = all(s["is_synthetic"] for s in submissions)
    options = []
    for draft in drafts:
        if all_synthetic:
            source_ids: Optional[List[str]] = []
        else:
            ids: List[str] = []
            for index in draft.get("source_indices") or []:
                if index < 1 or index > len(submissions):
                    continue
                submission_id = submissions[index - 1]["id"]
                if submission_id not in ids:
                    ids.append(submission_id)
            source_ids = ids or None
        options.append({
            "title": draft["title"],
            "description": draft["description"],
            "source_submission_ids": source_ids,
        })
    return options


# ── Synthesizer ──────────────────────────────────────────────────────────


class OptionSynthesizer:
    """Builds three option drafts for an episode's submissions."""

    def __init__(
        self,
        rounds: RoundRepository,
        generate: Optional[TextGenerator] = None,
        models: Optional[List[str]] = None,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rounds = rounds
        self._generate = generate
        self._models = models or cfg.GEMINI_OPTION_MODELS
        self._attempts = attempts or cfg.GEMINI_SYNTHESIS_ATTEMPTS
        self._backoff = (
            cfg.GEMINI_SYNTHESIS_BACKOFF_SECONDS
            if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep

    def synthesize(self, episode_id: str) -> List[Dict]:
        """Read the episode's submissions and synthesize from them."""
        submissions = self._rounds.list_submissions(episode_id)
        return self.synthesize_from(submissions)

    def synthesize_from(self, submissions: List[Dict]) -> List[Dict]:
        cleaned = clean_submissions(submissions)
        if len(cleaned) < OPTIONS_PER_ROUND:
            raise OptionSynthesisError("Not enough data")

        drafts = self._request_drafts(build_prompt(cleaned))
        options = map_attribution(drafts, cleaned)
        logger.info(
            "Synthesized %d options from %d submissions",
            len(options), len(cleaned),
        )
        return options

    def _request_drafts(self, prompt: str) -> List[Dict]:
        for attempt in range(1, self._attempts + 1):
            try:
                text = generate_text_with_fallback(
                    self._models,
                    prompt,
                    label="option synthesis",
                    generate=self._generate,
                    sleep=self._sleep,
                )
                return parse_option_drafts(text)
            except (ConfigurationError, OptionSynthesisError):
                raise
            except Exception as exc:
                if attempt < self._attempts and is_transient_error(exc):
                    logger.warning(
                        "Option synthesis attempt %d failed (%s); retrying",
                        attempt, exc,
                    )
                    self._sleep(self._backoff * attempt)
                    continue
                raise OptionSynthesisError(
                    f"Gemini option synthesis failed: {exc}"
                ) from exc

        raise OptionSynthesisError("Gemini option synthesis failed.")
