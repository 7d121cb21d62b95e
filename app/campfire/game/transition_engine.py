"""
Phase transition engine.

One call to :meth:`TransitionEngine.tick` is one evaluation of the game
clock. Ticks are triggered from outside, may overlap, and may be
duplicated; the only coordination between them is the compare-and-swap
on the game_state document:

1. A held lock younger than the stale threshold makes the tick a no-op.
   An older one is cleared (keyed on its own timestamp) and nothing else
   happens that tick.
2. A state with no expiry gets its timer armed and nothing else.
3. An expiry in the future means "Waiting".
4. A due expiry is claimed with a CAS on ``is_transitioning=False`` plus
   the observed phase and expiry. The loser reports "Transitioning".
5. The winner runs the phase action, writes the next phase and expiry,
   and releases the lock in a ``finally`` block.

A stale lock is presumed abandoned. If an action genuinely outlives
``STALE_TRANSITION_MINUTES`` a second tick can recover the lock and run
concurrently with it; that risk is accepted in exchange for never
wedging the game on a crashed worker. The lock holder's own writes are
keyed on its ``transitioning_since`` so a recovered-then-reclaimed lock
is never clobbered by the original holder.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from campfire.database.game_state_repository import GameStateStore
from campfire.database.round_repository import RoundRepository
from campfire.errors import ConfigurationError, GameStateMissingError
from campfire.game.constants import (
    FALLBACK_TITLE_LENGTH,
    OPTIONS_PER_ROUND,
    PHASE_LISTEN,
    PHASE_PROCESS,
    PHASE_SUBMIT,
    PHASE_VOTE,
    PLACEHOLDER_OPTION_DESCRIPTION,
    PLACEHOLDER_OPTION_TITLE,
    TICK_INITIALIZED,
    TICK_NOOP,
    TICK_RECOVERED,
    TICK_TRANSITIONED,
    TICK_TRANSITIONING,
    TICK_WAITING,
    VALID_PHASES,
)
from campfire.game.option_synthesizer import OptionSynthesizer, clean_submissions
from campfire.game.schedule import PhaseSchedule
from campfire.game.tally import rank, tally
from commons import truncate_to_millis, utcnow
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()


class TransitionLockLost(Exception):
    """The lock this tick claimed was recovered by another tick."""


# ── Option helpers shared with administrative flows ──────────────────────


def fallback_options(submissions: List[Dict]) -> List[Dict]:
    """
    Build three options straight from the newest submissions.

    Each of up to three submissions becomes one option attributed to
    itself (no attribution when every one is synthetic); the rest is
    padded with placeholder options.
    """
    cleaned = clean_submissions(submissions)[:OPTIONS_PER_ROUND]
    all_synthetic = bool(cleaned) and all(s["is_synthetic"] for s in cleaned)

    options = []
    for index, submission in enumerate(cleaned, start=1):
        title = submission["text"][:FALLBACK_TITLE_LENGTH].strip()
        options.append({
            "title": title or PLACEHOLDER_OPTION_TITLE.format(index=index),
            "description": submission["text"],
            "source_submission_ids": [] if all_synthetic else [submission["id"]],
        })

    while len(options) < OPTIONS_PER_ROUND:
        options.append({
            "title": PLACEHOLDER_OPTION_TITLE.format(index=len(options) + 1),
            "description": PLACEHOLDER_OPTION_DESCRIPTION,
            "source_submission_ids": None,
        })
    return options


def normalize_options(drafts: List[Dict]) -> List[Dict]:
    """Trim text fields and coerce attribution to a list or None."""
    normalized = []
    for draft in drafts:
        source_ids = draft.get("source_submission_ids")
        normalized.append({
            "title": (draft.get("title") or "").strip(),
            "description": (draft.get("description") or "").strip(),
            "source_submission_ids": (
                list(source_ids) if isinstance(source_ids, list) else None
            ),
        })
    return normalized


# ── Engine ───────────────────────────────────────────────────────────────


class TransitionEngine:
    """Advances the singleton game state one phase per claimed tick."""

    def __init__(
        self,
        store: GameStateStore,
        rounds: RoundRepository,
        synthesizer: OptionSynthesizer,
        schedule: Optional[PhaseSchedule] = None,
        stale_after: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._rounds = rounds
        self._synthesizer = synthesizer
        self._schedule = schedule or PhaseSchedule()
        self._stale_after = stale_after or timedelta(
            minutes=cfg.STALE_TRANSITION_MINUTES
        )
        self._clock = clock

    # ── Public entry points ──────────────────────────────────────────────

    def run_tick(self, now: Optional[datetime] = None) -> Tuple[bool, Dict]:
        """Run one tick, reporting any failure as ``{"ok": False, ...}``."""
        try:
            return True, self.tick(now)
        except Exception as exc:
            logger.error("Tick failed: %s", exc, exc_info=True)
            return False, {"ok": False, "error": str(exc)}

    def tick(self, now: Optional[datetime] = None) -> Dict:
        """Evaluate the game clock once. Raises on store or config errors."""
        now = truncate_to_millis(now or self._clock())

        if not (self._store.supports_lock and self._store.supports_expiry):
            raise ConfigurationError(
                f"Schema version {self._store.columns.version} cannot hold "
                "phase timers or the transition lock; migrate the database."
            )

        state = self._store.read()
        if state is None:
            raise GameStateMissingError("Game state not found.")

        phase = state["current_phase"]
        expiry = state["phase_expiry"]
        if phase not in VALID_PHASES:
            raise ValueError(f"Invalid phase in game state: {phase!r}")

        if state["is_transitioning"]:
            return self._handle_held_lock(state, now)

        if expiry is None:
            return self._initialize_timer(phase, now)

        if now < expiry:
            return self._result(TICK_WAITING, phase=phase, phase_expiry=expiry)

        claimed = self._store.compare_and_swap(
            {
                "is_transitioning": False,
                "current_phase": phase,
                "phase_expiry": expiry,
            },
            {"is_transitioning": True, "transitioning_since": now},
        )
        if not claimed:
            logger.info("Tick lost the transition claim for %s", phase)
            return self._result(TICK_TRANSITIONING)

        logger.info("Transition lock claimed at %s (phase %s)", now, phase)
        try:
            return self._transition(state, now)
        finally:
            self._release(now)

    # ── Tick branches ────────────────────────────────────────────────────

    def _handle_held_lock(self, state: Dict, now: datetime) -> Dict:
        since = state["transitioning_since"]
        if since is not None and now - since < self._stale_after:
            return self._result(
                TICK_TRANSITIONING,
                phase=state["current_phase"],
                phase_expiry=state["phase_expiry"],
            )

        # A lock with no timestamp can never age, so it counts as stale.
        cleared = self._store.compare_and_swap(
            {"is_transitioning": True, "transitioning_since": since},
            {"is_transitioning": False, "transitioning_since": None},
        )
        if not cleared:
            return self._result(TICK_TRANSITIONING)

        logger.warning(
            "Recovered stale transition lock held since %s (phase %s)",
            since, state["current_phase"],
        )
        return self._result(TICK_RECOVERED)

    def _initialize_timer(self, phase: str, now: datetime) -> Dict:
        target = self._schedule.initial_phase(phase)
        new_expiry = self._schedule.expiry_for(target, now)
        self._store.force_update(
            {"current_phase": target, "phase_expiry": new_expiry}
        )
        logger.info("Phase timer initialized: %s until %s", target, new_expiry)
        return self._result(
            TICK_INITIALIZED, phase=target, phase_expiry=new_expiry
        )

    def _transition(self, state: Dict, now: datetime) -> Dict:
        phase = state["current_phase"]
        episode_id = state["current_episode_id"]
        extra: Dict = {}

        if phase == PHASE_LISTEN:
            next_phase = PHASE_SUBMIT
        elif phase == PHASE_SUBMIT:
            extra["options_source"] = self._open_voting(episode_id)
            next_phase = PHASE_VOTE
        elif phase == PHASE_VOTE:
            extra["results"] = self._close_voting(episode_id)
            next_phase = PHASE_PROCESS
        elif phase == PHASE_PROCESS:
            if episode_id:
                extra["purged"] = self._rounds.purge_round(episode_id)
            next_phase = PHASE_SUBMIT
        else:
            return self._result(
                TICK_NOOP, phase=phase, phase_expiry=state["phase_expiry"]
            )

        new_expiry = self._schedule.expiry_for(next_phase, now)
        written = self._store.compare_and_swap(
            {"is_transitioning": True, "transitioning_since": now},
            {"current_phase": next_phase, "phase_expiry": new_expiry},
        )
        if not written:
            raise TransitionLockLost(
                "Transition lock was recovered by another tick before "
                f"{phase} -> {next_phase} could be written."
            )

        logger.info(
            "Transitioned %s -> %s (expires %s)", phase, next_phase, new_expiry
        )
        return self._result(
            TICK_TRANSITIONED,
            phase=next_phase,
            phase_expiry=new_expiry,
            **{"from": phase, "to": next_phase},
            **extra,
        )

    # ── Phase actions ────────────────────────────────────────────────────

    def _open_voting(self, episode_id: Optional[str]) -> str:
        """Write exactly three options for the episode. Returns their source."""
        if not episode_id:
            raise ValueError("No active episode.")

        try:
            drafts = self._synthesizer.synthesize(episode_id)
            source = "synthesized"
        except Exception as exc:
            logger.warning(
                "Option synthesis failed for episode %s, using fallback: %s",
                episode_id, exc,
            )
            recent = self._rounds.recent_submissions(
                episode_id, cfg.RECENT_SUBMISSIONS_LIMIT
            )
            drafts = fallback_options(recent)
            source = "fallback"

        self._rounds.replace_options(episode_id, normalize_options(drafts))
        return source

    def _close_voting(self, episode_id: Optional[str]) -> List[Dict]:
        """Log and return the final ranking; nothing is mutated."""
        if not episode_id:
            return []
        options = self._rounds.list_options(episode_id)
        counts = tally(self._rounds, [o["id"] for o in options])
        ranking = [
            {"option_id": o["id"], "title": o["title"], "vote_count": o["vote_count"]}
            for o in rank(options, counts)
        ]
        logger.info("Voting closed for episode %s: %s", episode_id, ranking)
        return ranking

    # ── Helpers ──────────────────────────────────────────────────────────

    def _release(self, claimed_at: datetime) -> None:
        """Clear this tick's lock. Never raises."""
        try:
            released = self._store.compare_and_swap(
                {"is_transitioning": True, "transitioning_since": claimed_at},
                {"is_transitioning": False, "transitioning_since": None},
            )
            if not released:
                logger.warning(
                    "Transition lock from %s was already released", claimed_at
                )
        except Exception as exc:
            logger.error("Failed to release transition lock: %s", exc)

    @staticmethod
    def _result(status: str, **fields) -> Dict:
        return {"ok": True, "status": status, **fields}
