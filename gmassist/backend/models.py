"""Domain models for encounter snapshots and their JSON wire form."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import re
from typing import Any, Union
import uuid

CR_TAG = re.compile(r"^CR\s+", re.IGNORECASE)
INT_TEXT = re.compile(r"[+-]?[0-9]+")


def new_id() -> str:
    return uuid.uuid4().hex


class CombatantKind(str, Enum):
    PC = "pc"
    NPC = "npc"
    MONSTER = "monster"

    @property
    def rank(self) -> int:
        return _KIND_RANK[self]


_KIND_RANK = {CombatantKind.PC: 2, CombatantKind.NPC: 1, CombatantKind.MONSTER: 0}


@dataclass(frozen=True)
class Untimed:
    key: str

    def to_json(self) -> Any:
        return self.key


@dataclass(frozen=True)
class Timed:
    key: str
    rounds_remaining: int

    def to_json(self) -> Any:
        return {"key": self.key, "rounds": self.rounds_remaining}


ConditionEntry = Union[Untimed, Timed]


def condition_from_json(raw: Any) -> ConditionEntry | None:
    if isinstance(raw, str):
        return Untimed(raw)
    if isinstance(raw, dict) and isinstance(raw.get("key"), str):
        rounds = raw.get("rounds")
        if _is_int(rounds) and rounds > 0:
            return Timed(raw["key"], rounds)
        return Untimed(raw["key"])
    return None


@dataclass(frozen=True)
class Combatant:
    id: str
    name: str
    initiative: int | None = None
    hit_points: int | None = None
    armor_class: int | None = None
    kind: CombatantKind = CombatantKind.NPC
    conditions: tuple[ConditionEntry, ...] = ()
    pc_id: str | None = None
    monster_key: str | None = None
    npc_race_key: str | None = None
    tags: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "initiative": self.initiative,
            "hitPoints": self.hit_points,
            "armorClass": self.armor_class,
            "kind": self.kind.value,
            "conditions": [entry.to_json() for entry in self.conditions],
            "tags": list(self.tags),
        }
        if self.pc_id is not None:
            payload["pcId"] = self.pc_id
        if self.monster_key is not None:
            payload["monsterKey"] = self.monster_key
        if self.npc_race_key is not None:
            payload["npcRaceKey"] = self.npc_race_key
        return payload

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> Combatant:
        entries = (condition_from_json(raw) for raw in _as_list(payload.get("conditions")))
        conditions = tuple(entry for entry in entries if entry is not None)
        combatant_id = payload.get("id")
        return cls(
            id=combatant_id if isinstance(combatant_id, str) and combatant_id else new_id(),
            name=str(payload.get("name") or "Unnamed"),
            initiative=_optional_int(payload.get("initiative")),
            hit_points=_optional_int(payload.get("hitPoints")),
            armor_class=_optional_int(payload.get("armorClass")),
            kind=infer_kind(payload),
            conditions=_unique_conditions(conditions),
            pc_id=_optional_str(payload.get("pcId")),
            monster_key=_optional_str(payload.get("monsterKey")),
            npc_race_key=_optional_str(payload.get("npcRaceKey")),
            tags=tuple(str(tag) for tag in _as_list(payload.get("tags"))),
        )


@dataclass(frozen=True)
class EncounterState:
    combatants: tuple[Combatant, ...] = ()
    round: int = 1
    order_locked: bool = False
    active_id: str | None = None
    updated_at: int = 0

    def find(self, combatant_id: str | None) -> Combatant | None:
        for combatant in self.combatants:
            if combatant.id == combatant_id:
                return combatant
        return None

    def to_json(self) -> dict[str, Any]:
        return {
            "combatants": [combatant.to_json() for combatant in self.combatants],
            "round": self.round,
            "orderLocked": self.order_locked,
            "activeId": self.active_id,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> EncounterState:
        combatants: list[Combatant] = []
        ids: set[str] = set()
        for raw in payload.get("combatants") or []:
            if not isinstance(raw, dict):
                continue
            combatant = Combatant.from_json(raw)
            if combatant.id in ids:
                combatant = replace(combatant, id=new_id())
            ids.add(combatant.id)
            combatants.append(combatant)
        active_id = payload.get("activeId")
        round_raw = payload.get("round")
        updated_raw = payload.get("updatedAt")
        return cls(
            combatants=tuple(combatants),
            round=max(1, round_raw) if _is_int(round_raw) else 1,
            order_locked=bool(payload.get("orderLocked", False)),
            active_id=active_id if active_id in ids else None,
            updated_at=updated_raw if _is_int(updated_raw) else 0,
        )


def infer_kind(payload: dict[str, Any]) -> CombatantKind:
    """Explicit kind wins; a party back-reference means pc; CR tags mean monster."""
    raw_kind = payload.get("kind")
    if raw_kind in {kind.value for kind in CombatantKind}:
        return CombatantKind(raw_kind)
    if payload.get("isPC") is True or payload.get("pcId"):
        return CombatantKind.PC
    tags = _as_list(payload.get("tags"))
    if payload.get("monsterKey") or payload.get("monKey") or any(CR_TAG.match(str(tag)) for tag in tags):
        return CombatantKind.MONSTER
    return CombatantKind.NPC


def _unique_conditions(entries: tuple[ConditionEntry, ...]) -> tuple[ConditionEntry, ...]:
    seen: dict[str, int] = {}
    result: list[ConditionEntry] = []
    for entry in entries:
        if entry.key in seen:
            result[seen[entry.key]] = entry
            continue
        seen[entry.key] = len(result)
        result.append(entry)
    return tuple(result)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _optional_int(value: Any) -> int | None:
    if _is_int(value):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and INT_TEXT.fullmatch(value.strip()):
        return int(value.strip())
    return None


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
