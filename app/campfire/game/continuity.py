"""
Continuity header for episode drafting.

Renders the active story bible, the canon rules, the winning option,
contributor credit and recent canon episodes into one prompt preamble.
The labels here ("Trust score:", "Limit:", "Cast / Voice DNA") are the
ones the director reads back out of the header.
"""

from typing import Dict, List, Sequence

SECTION_BREAK = "\n\n====\n\n"
CANON_EPISODE_CHARS = 1400

CANON_RULES = """Canon rules (STRICT)
1) NO-NEW-CANON-EXCEPT-VOTE: You may ONLY introduce new named characters, factions, locations, items, or major facts if they are explicitly present in the winning option above.
2) Everything else must remain consistent with the Story Bible and prior episodes.
3) If the winning option implies a new element, integrate it in a way that fits the bible's domains/dynamics and does not contradict established facts.
4) Do not retcon. Avoid contradictions entirely rather than explaining them away."""


def _field(section: Dict, key: str) -> str:
    value = (section or {}).get(key)
    if value is None or value == "":
        return "(unknown)"
    return str(value)


def _joined(values) -> str:
    items = [str(v).strip() for v in values or [] if str(v).strip()]
    return " | ".join(items) if items else "(none)"


def truncate_for_prompt(text: str, max_chars: int) -> str:
    text = text.strip()
    return text if len(text) <= max_chars else text[:max_chars] + "…"


def format_cast(cast: Dict) -> str:
    lines = []
    for name, profile in (cast or {}).items():
        if not str(name).strip() or not isinstance(profile, dict):
            continue
        role = (profile.get("role") or "").strip() or "(role unknown)"
        dna = (profile.get("voice_dna") or "").strip() or "(voice DNA unknown)"
        lines.append(
            f"- {str(name).strip()} ({role}): {dna} "
            f"Key phrases: {_joined(profile.get('key_phrases'))}"
        )
    return "Cast / Voice DNA\n" + "\n".join(lines) if lines else ""


def format_bible_summary(bible: Dict) -> str:
    os_ = bible.get("objective_story") or {}
    mc = bible.get("main_character") or {}
    ic = bible.get("influence_character") or {}
    rs = bible.get("relationship_story") or {}

    sections = [
        "Dramatica / NCP Canon Summary",
        "Objective Story\n"
        f"- Domain: {_field(os_, 'domain')}\n"
        f"- Goal: {_field(os_, 'goal')}\n"
        f"- Consequence: {_field(os_, 'consequence')}\n"
        f"- Problem -> Solution: {_field(os_, 'problem')} -> {_field(os_, 'solution')}\n"
        f"- Concern: {_field(os_, 'concern')}\n"
        f"- Issue: {_field(os_, 'issue')}",
        "Main Character\n"
        f"- Name: {_field(mc, 'name')}\n"
        f"- Domain: {_field(mc, 'domain')}\n"
        f"- Resolve / Growth / Approach: {_field(mc, 'resolve')} / "
        f"{_field(mc, 'growth')} / {_field(mc, 'approach')}\n"
        f"- Crucial flaw: {_field(mc, 'crucial_flaw')}",
        "Influence Character\n"
        f"- Name: {_field(ic, 'name')}\n"
        f"- Domain: {_field(ic, 'domain')}\n"
        f"- Unique ability: {_field(ic, 'unique_ability')}\n"
        f"- Impact: {_field(ic, 'impact')}",
        "Relationship Story\n"
        f"- Domain: {_field(rs, 'domain')}\n"
        f"- Dynamic: {_field(rs, 'dynamic')}\n"
        f"- Trust score: {_field(rs, 'trust_score')}\n"
        f"- Catalyst: {_field(rs, 'catalyst')}",
        format_cast(bible.get("cast")),
        "Dynamics\n"
        f"- Driver: {_field(bible, 'driver')}\n"
        f"- Limit: {_field(bible, 'limit')}\n"
        f"- Outcome / Judgment: {_field(bible, 'outcome')} / {_field(bible, 'judgment')}",
        "World State\n"
        f"- Active facts: {_joined(bible.get('active_facts'))}\n"
        f"- Inventory: {_joined(bible.get('inventory'))}",
    ]
    return "\n\n".join(s for s in sections if s)


def format_canon_episodes(episodes: List[Dict]) -> str:
    blocks = []
    for episode in episodes:
        text = (episode.get("narrative_text") or "").strip()
        if not text:
            continue
        header = f"S{episode['season_num']}E{episode['episode_num']}: {episode['title']}"
        blocks.append(f"{header}\n{truncate_for_prompt(text, CANON_EPISODE_CHARS)}")
    return "\n\n---\n\n".join(blocks) if blocks else "(no narrative canon found)"


def build_continuity_header(
    bible: Dict,
    canon_episodes: List[Dict],
    winning_title: str,
    winning_description: str,
    contributor_names: Sequence[str] = (),
) -> str:
    winner = (
        "Winning option (ONLY allowed source of new canon this episode)\n"
        f"- Title: {winning_title.strip()}\n"
        f"- Description: {winning_description.strip()}"
    )
    credit = ""
    if contributor_names:
        credit = (
            "CONTRIBUTOR CREDIT (DO NOT BREAK THE FOURTH WALL)\n"
            "The plot points for this episode were suggested by the following "
            f"architects: {', '.join(contributor_names)}.\n"
            "IF their names sound in-world, subtly weave a nod to them into the "
            "narration.\n"
            "IF their names are obvious gamer-tags, DO NOT use the name "
            "directly, but honor the spirit of their contribution."
        )
    canon = "Canon episodes (recent + Episode 1)\n" + format_canon_episodes(canon_episodes)

    return SECTION_BREAK.join(
        block for block in (
            format_bible_summary(bible), CANON_RULES, winner, credit, canon,
        ) if block
    )
