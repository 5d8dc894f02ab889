"""Adapters from party-roster and monster-catalog records to combatants.

Roster and catalog records belong to other parts of the toolkit; they are only
read here, never modified.
"""

from __future__ import annotations

from dataclasses import replace
import re
import string
from typing import Any, Iterable, Mapping

from gmassist.backend.models import Combatant, CombatantKind, EncounterState, new_id
from gmassist.backend.state import utc_now_ms

MAX_MONSTER_BATCH = 20

_LEADING_DIGITS = re.compile(r"^\s*(\d+)")


def parse_hit_points(raw: Any) -> int | None:
    """Accept ``12``, ``{"current": 12}`` or ``"12 (2d8+3)"``."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, Mapping) and isinstance(raw.get("current"), int):
        return raw["current"]
    if isinstance(raw, str):
        match = _LEADING_DIGITS.match(raw)
        return int(match.group(1)) if match else None
    return None


def parse_armor_class(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, list) and raw and isinstance(raw[0], Mapping):
        value = raw[0].get("value")
        return value if isinstance(value, int) else None
    return None


def _record_hit_points(record: Mapping[str, Any]) -> int | None:
    return parse_hit_points(record.get("hitPoints", record.get("hp")))


def _record_armor_class(record: Mapping[str, Any]) -> int | None:
    return parse_armor_class(record.get("armorClass", record.get("ac")))


def combatant_from_pc(record: Mapping[str, Any]) -> Combatant:
    return Combatant(
        id=new_id(),
        name=str(record.get("name") or "PC"),
        initiative=None,
        hit_points=_record_hit_points(record),
        armor_class=_record_armor_class(record),
        kind=CombatantKind.PC,
        pc_id=str(record["id"]),
    )


def sync_party(state: EncounterState, records: Iterable[Mapping[str, Any]]) -> EncounterState:
    """Merge the party roster into the encounter.

    Existing PC combatants are patched through their ``pc_id`` back-reference,
    missing ones are appended and PCs no longer on the roster are dropped.
    """
    roster = [record for record in records if record.get("id") is not None]
    by_pc_id = {str(record["id"]): record for record in roster}

    merged: list[Combatant] = []
    linked: set[str] = set()
    for combatant in state.combatants:
        if combatant.pc_id is None:
            merged.append(combatant)
            continue
        record = by_pc_id.get(combatant.pc_id)
        if record is None:
            continue
        linked.add(combatant.pc_id)
        merged.append(
            replace(
                combatant,
                name=str(record.get("name") or combatant.name),
                hit_points=_record_hit_points(record),
                armor_class=_record_armor_class(record),
                kind=CombatantKind.PC,
            )
        )

    additions = [combatant_from_pc(record) for pc_id, record in by_pc_id.items() if pc_id not in linked]
    ids = {c.id for c in merged}
    return replace(
        state,
        combatants=tuple(merged + additions),
        active_id=state.active_id if state.active_id in ids else None,
        updated_at=utc_now_ms(),
    )


def monsters_from_catalog(
    entry: Mapping[str, Any],
    count: int = 1,
    hit_points: Iterable[int | None] | None = None,
) -> list[Combatant]:
    """Build ``count`` monster combatants from a read-only catalog entry.

    ``hit_points`` optionally supplies one rolled value per monster; otherwise
    the entry's fixed hit points are used.
    """
    count = max(1, min(MAX_MONSTER_BATCH, int(count)))
    rolled = list(hit_points) if hit_points is not None else []
    name = str(entry.get("name") or "Monster")
    tags = [f"CR {entry.get('challenge_rating', '?')}"]
    if entry.get("type"):
        tags.append(str(entry["type"]))

    monsters: list[Combatant] = []
    for index in range(count):
        hp = rolled[index] if index < len(rolled) else parse_hit_points(entry.get("hit_points"))
        monsters.append(
            Combatant(
                id=new_id(),
                name=name if count == 1 else f"{name} {string.ascii_uppercase[index]}",
                hit_points=hp,
                armor_class=parse_armor_class(entry.get("armor_class")),
                kind=CombatantKind.MONSTER,
                monster_key=str(entry.get("slug") or name),
                tags=tuple(tags),
            )
        )
    return monsters


def npc_combatant(
    name: str = "",
    race: Mapping[str, Any] | None = None,
    hit_points: int | None = None,
) -> Combatant:
    race_name = str(race.get("name") or "") if race else ""
    return Combatant(
        id=new_id(),
        name=name.strip() or "NPC",
        hit_points=hit_points,
        armor_class=parse_armor_class(race.get("base_ac")) if race else None,
        kind=CombatantKind.NPC,
        npc_race_key=str(race["key"]) if race and race.get("key") else None,
        tags=(race_name,) if race_name else (),
    )
