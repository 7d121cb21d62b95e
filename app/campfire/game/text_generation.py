"""
Google Gemini text generation helpers.

Wraps ``google-genai`` with the pieces every prompt in the game needs:
a lazily-built client, a walk across model tiers with one retry per
model on transient network errors, and lenient JSON extraction from
model output.
"""

import json
import logging
import re
import time
from typing import Callable, List, Optional

from google import genai

from campfire.errors import ConfigurationError, TextGenerationError
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

# (model, prompt) -> text
TextGenerator = Callable[[str, str], str]

_client: Optional[genai.Client] = None

_TRANSIENT_MARKERS = (
    "fetch failed",
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "enotfound",
    "eai_again",
    "temporarily unavailable",
)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


# ── Client ───────────────────────────────────────────────────────────────


def get_client() -> genai.Client:
    """Return the shared Gemini client, building it on first use."""
    global _client
    if _client is None:
        if not cfg.GEMINI_API_KEY:
            raise ConfigurationError("Missing GEMINI_API_KEY")
        _client = genai.Client(api_key=cfg.GEMINI_API_KEY)
    return _client


def generate_text(model: str, prompt: str) -> str:
    """Single Gemini call returning the response text."""
    logger.debug("Gemini %s prompt: %s", model, prompt)
    response = get_client().models.generate_content(
        model=model,
        contents=prompt,
        config={"temperature": 1.0, "top_p": 0.95},
    )
    return response.text or ""


def get_text_generator() -> TextGenerator:
    """FastAPI dependency handing out the production text generator."""
    return generate_text


# ── Retry across model tiers ─────────────────────────────────────────────


def is_transient_error(exc: BaseException) -> bool:
    """True for network-level failures worth one more try."""
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    messages = [str(exc).lower()]
    cause = exc.__cause__ or exc.__context__
    if cause is not None:
        if isinstance(cause, (ConnectionError, TimeoutError)):
            return True
        messages.append(str(cause).lower())
    return any(marker in msg for msg in messages for marker in _TRANSIENT_MARKERS)


def generate_text_with_fallback(
    models: List[str],
    prompt: str,
    label: str,
    generate: Optional[TextGenerator] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Try each model in order. A model whose call fails with a transient
    error gets one more attempt after a short pause before moving on.
    Raises TextGenerationError carrying every model's failure.
    """
    generate = generate or generate_text
    errors: List[str] = []
    for model in models:
        try:
            return generate(model, prompt)
        except ConfigurationError:
            raise
        except Exception as exc:
            errors.append(f"{model}: {exc}")
            if not is_transient_error(exc):
                continue
            sleep(cfg.GEMINI_TRANSIENT_RETRY_SECONDS)
            try:
                return generate(model, prompt)
            except ConfigurationError:
                raise
            except Exception as retry_exc:
                errors.append(f"{model} (retry): {retry_exc}")

    logger.warning("Gemini %s failed across models: %s", label, errors)
    raise TextGenerationError(
        f"Gemini {label} failed across models. {' | '.join(errors)}"
    )


# ── JSON extraction ──────────────────────────────────────────────────────


def strip_json_fence(text: str) -> str:
    """Return the body of a ```json fenced block, or the trimmed text."""
    trimmed = text.strip()
    match = _FENCE_RE.search(trimmed)
    return (match.group(1) if match else trimmed).strip()


def parse_json_array(raw: str) -> list:
    """
    Parse model output that should be a JSON array.

    Falls back to the outermost ``[...]`` span when the text around the
    array is not JSON. Raises ValueError when no array can be recovered.
    """
    cleaned = strip_json_fence(raw)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        first = cleaned.find("[")
        last = cleaned.rfind("]")
        if first < 0 or last <= first:
            raise ValueError("AI did not return valid JSON.")
        try:
            parsed = json.loads(cleaned[first:last + 1])
        except json.JSONDecodeError as exc:
            raise ValueError("AI did not return valid JSON.") from exc

    if not isinstance(parsed, list):
        raise ValueError("AI output JSON must be an array.")
    return parsed


def parse_json_object(raw: str) -> dict:
    """
    Parse model output that should be a JSON object, falling back to the
    outermost ``{...}`` span. Raises ValueError when none can be recovered.
    """
    cleaned = strip_json_fence(raw)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        first = cleaned.find("{")
        last = cleaned.rfind("}")
        if first < 0 or last <= first:
            raise ValueError("AI did not return valid JSON.")
        try:
            parsed = json.loads(cleaned[first:last + 1])
        except json.JSONDecodeError as exc:
            raise ValueError("AI did not return valid JSON.") from exc

    if not isinstance(parsed, dict):
        raise ValueError("AI output JSON must be an object.")
    return parsed
