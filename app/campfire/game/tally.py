"""
Vote tallying.

Counts are always seeded from the option list, so an option nobody has
voted for still shows up with 0. Ranked views sort by count, highest
first; equal counts keep the order the options were given in.
"""

from collections import Counter
from typing import Dict, Iterable, List

from campfire.database.round_repository import RoundRepository


def count_votes(option_ids: List[str], voted_option_ids: Iterable[str]) -> Dict[str, int]:
    """Per-option counts for *option_ids*; votes for other ids are ignored."""
    observed = Counter(voted_option_ids)
    return {option_id: observed.get(option_id, 0) for option_id in option_ids}


def tally(rounds: RoundRepository, option_ids: List[str]) -> Dict[str, int]:
    """Read the votes for *option_ids* from the store and count them."""
    return count_votes(option_ids, rounds.vote_option_ids(option_ids))


def rank(items: List[Dict], counts: Dict[str, int], key: str = "id") -> List[Dict]:
    """
    Attach ``vote_count`` to each item and sort descending by it.

    ``sorted`` is stable, so ties stay in input order.
    """
    ranked = [
        {**item, "vote_count": counts.get(item[key], 0)} for item in items
    ]
    return sorted(ranked, key=lambda item: item["vote_count"], reverse=True)
