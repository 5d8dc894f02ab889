"""Condition catalog and the per-combatant condition ledger."""

from __future__ import annotations

from dataclasses import replace

from gmassist.backend.models import Combatant, ConditionEntry, Timed, Untimed

CONDITIONS: dict[str, str] = {
    "Blinded": "Fail sight checks; attacks vs you have advantage; your attacks have disadvantage.",
    "Charmed": "Can't attack charmer; charmer has advantage on social checks.",
    "Deafened": "Fail hearing checks.",
    "Frightened": "Disadvantage while source is in sight; can't willingly move closer.",
    "Grappled": "Speed 0; ends if grappler incapacitated or moved away.",
    "Incapacitated": "No actions or reactions.",
    "Invisible": "Heavily obscured; attacks vs you have disadvantage; your attacks have advantage.",
    "Paralyzed": "Incapacitated; fail Str/Dex saves; attacks vs you have advantage; crits within 5 ft.",
    "Petrified": "Transformed; incapacitated; resist all damage; vulnerable to bludgeoning.",
    "Poisoned": "Disadvantage on attack rolls and ability checks.",
    "Prone": "Crawl; attacks vs you at 5 ft have advantage; ranged attacks vs you have disadvantage.",
    "Restrained": "Speed 0; attacks vs you have advantage; your attacks have disadvantage; Dex saves disadvantage.",
    "Stunned": "Incapacitated; fail Str/Dex saves; attacks vs you have advantage.",
    "Unconscious": "Incapacitated; drop held items; prone; attacks vs you have advantage; crits within 5 ft.",
}


def condition_brief(key: str) -> str | None:
    return CONDITIONS.get(key)


def make_entry(key: str, rounds: int | None = None) -> ConditionEntry:
    if isinstance(rounds, int) and not isinstance(rounds, bool) and rounds > 0:
        return Timed(key, rounds)
    return Untimed(key)


def upsert(combatant: Combatant, key: str, rounds: int | None = None) -> Combatant:
    """Insert or replace the entry for ``key``; a positive ``rounds`` makes it timed."""
    entry = make_entry(key, rounds)
    entries = list(combatant.conditions)
    for index, existing in enumerate(entries):
        if existing.key == key:
            entries[index] = entry
            break
    else:
        entries.append(entry)
    return replace(combatant, conditions=tuple(entries))


def remove_by_key(combatant: Combatant, key: str) -> Combatant:
    entries = tuple(entry for entry in combatant.conditions if entry.key != key)
    if len(entries) == len(combatant.conditions):
        return combatant
    return replace(combatant, conditions=entries)


def tick(combatant: Combatant) -> tuple[Combatant, list[str]]:
    """Decrement every timed entry of one combatant.

    Entries reaching zero are dropped and their keys returned; untimed entries
    are kept as they are.
    """
    kept: list[ConditionEntry] = []
    expired: list[str] = []
    for entry in combatant.conditions:
        if isinstance(entry, Timed):
            remaining = entry.rounds_remaining - 1
            if remaining <= 0:
                expired.append(entry.key)
                continue
            kept.append(Timed(entry.key, remaining))
        else:
            kept.append(entry)
    if not expired and not any(isinstance(entry, Timed) for entry in kept):
        return combatant, expired
    return replace(combatant, conditions=tuple(kept)), expired


def clear(combatant: Combatant) -> Combatant:
    if not combatant.conditions:
        return combatant
    return replace(combatant, conditions=())
