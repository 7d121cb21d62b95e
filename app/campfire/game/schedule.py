"""
Phase duration policy.

SUBMIT, VOTE and PROCESS each run for a configured number of minutes.
LISTEN has no timer: the scheduler moves it straight on to SUBMIT the
first time it sees it.
"""

import math
from datetime import datetime, timedelta
from typing import Dict, Optional

from campfire.game.constants import (
    PHASE_LISTEN,
    PHASE_PROCESS,
    PHASE_SUBMIT,
    PHASE_VOTE,
)
from configs.config import get_config

cfg = get_config()

# Where each phase goes when its timer runs out
NEXT_PHASE: Dict[str, str] = {
    PHASE_LISTEN: PHASE_SUBMIT,
    PHASE_SUBMIT: PHASE_VOTE,
    PHASE_VOTE: PHASE_PROCESS,
    PHASE_PROCESS: PHASE_SUBMIT,
}


class PhaseSchedule:
    """Maps a phase to its duration and computes expiries."""

    def __init__(
        self,
        submit_minutes: Optional[int] = None,
        vote_minutes: Optional[int] = None,
        process_minutes: Optional[int] = None,
    ) -> None:
        self._durations = {
            PHASE_SUBMIT: timedelta(
                minutes=submit_minutes or cfg.PHASE_SUBMIT_MINUTES
            ),
            PHASE_VOTE: timedelta(
                minutes=vote_minutes or cfg.PHASE_VOTE_MINUTES
            ),
            PHASE_PROCESS: timedelta(
                minutes=process_minutes or cfg.PHASE_PROCESS_MINUTES
            ),
        }

    def duration_for(self, phase: str) -> Optional[timedelta]:
        """Duration of *phase*, or None for LISTEN."""
        return self._durations.get(phase)

    def expiry_for(self, phase: str, now: datetime) -> Optional[datetime]:
        duration = self.duration_for(phase)
        return now + duration if duration is not None else None

    @staticmethod
    def next_phase(phase: str) -> str:
        return NEXT_PHASE[phase]

    @staticmethod
    def initial_phase(phase: str) -> str:
        """Phase to arm when a state has no timer: LISTEN becomes SUBMIT."""
        return PHASE_SUBMIT if phase == PHASE_LISTEN else phase


def minutes_from(value, default: int) -> int:
    """
    Normalise a user-supplied minute count: floor of the number, at
    least 1. Missing or non-numeric input gives *default*.
    """
    if value is None:
        return default
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(minutes):
        return default
    return max(1, math.floor(minutes))
