"""Turn-order reducers and the store-bound encounter engine."""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any, Callable, Iterable

from gmassist.backend import conditions as ledger
from gmassist.backend.keys import ENCOUNTERS_KEY
from gmassist.backend.models import (
    Combatant,
    CombatantKind,
    EncounterState,
    Timed,
    Untimed,
    new_id,
)
from gmassist.backend.state import (
    ENCOUNTER_SCHEMA_VERSION,
    build_initial_payload,
    migrate_encounter_state,
    utc_now_ms,
)
from gmassist.backend.store import PersistentStore, StoreHandle

logger = logging.getLogger(__name__)

StateListener = Callable[[EncounterState], None]

_PATCH_FIELDS = {
    "name": "name",
    "initiative": "initiative",
    "hitPoints": "hitPoints",
    "hit_points": "hitPoints",
    "armorClass": "armorClass",
    "armor_class": "armorClass",
    "kind": "kind",
    "conditions": "conditions",
    "pcId": "pcId",
    "pc_id": "pcId",
    "monsterKey": "monsterKey",
    "monster_key": "monsterKey",
    "npcRaceKey": "npcRaceKey",
    "npc_race_key": "npcRaceKey",
    "tags": "tags",
}


@dataclass(frozen=True)
class ActionResult:
    state: EncounterState
    engine_events: list[dict[str, Any]]


def sort_key(combatant: Combatant) -> tuple[int, int, int, str, str]:
    """Initiative descending with blanks last, then pc > npc > monster, then name."""
    if combatant.initiative is None:
        initiative_key = (1, 0)
    else:
        initiative_key = (0, -combatant.initiative)
    return (*initiative_key, -combatant.kind.rank, combatant.name.casefold(), combatant.name)


def sorted_combatants(state: EncounterState) -> list[Combatant]:
    """Current turn order; the stored sequence is used verbatim while locked."""
    if state.order_locked:
        return list(state.combatants)
    return sorted(state.combatants, key=sort_key)


def _touch(state: EncounterState, **changes: Any) -> EncounterState:
    return replace(state, updated_at=utc_now_ms(), **changes)


def _map_combatant(
    state: EncounterState,
    combatant_id: str,
    change: Callable[[Combatant], Combatant],
) -> EncounterState:
    combatant = state.find(combatant_id)
    if combatant is None:
        logger.debug("Ignoring change for unknown combatant %s", combatant_id)
        return state
    updated = change(combatant)
    if updated is combatant:
        return state
    return _touch(
        state,
        combatants=tuple(updated if c.id == combatant_id else c for c in state.combatants),
    )


def _coerce_combatant(combatant: Combatant | dict[str, Any]) -> Combatant:
    if isinstance(combatant, Combatant):
        return combatant
    return Combatant.from_json(combatant)


def add_combatants(
    state: EncounterState,
    combatants: Iterable[Combatant | dict[str, Any]],
) -> EncounterState:
    """Append combatants, each under a freshly minted id. No de-duplication."""
    added = tuple(replace(_coerce_combatant(c), id=new_id()) for c in combatants)
    if not added:
        return state
    return _touch(state, combatants=state.combatants + added)


def add_combatant(state: EncounterState, combatant: Combatant | dict[str, Any]) -> EncounterState:
    return add_combatants(state, [combatant])


def _camel_patch(patch: dict[str, Any]) -> dict[str, Any]:
    """Translate a patch to the wire field names, dropping values of the wrong shape."""
    changes: dict[str, Any] = {}
    for raw_name, value in patch.items():
        name = _PATCH_FIELDS.get(raw_name)
        if name is None:
            continue
        if name == "name" and not (isinstance(value, str) and value.strip()):
            logger.debug("Ignoring invalid combatant name %r", value)
            continue
        if name == "kind":
            if isinstance(value, CombatantKind):
                value = value.value
            if value not in {kind.value for kind in CombatantKind}:
                logger.debug("Ignoring unknown combatant kind %r", value)
                continue
        elif name in ("conditions", "tags"):
            if not isinstance(value, (list, tuple)):
                logger.debug("Ignoring %s patch that is not a list", name)
                continue
            if name == "conditions":
                value = [raw.to_json() if isinstance(raw, (Timed, Untimed)) else raw for raw in value]
        changes[name] = value
    return changes


def update_combatant(state: EncounterState, combatant_id: str, patch: dict[str, Any]) -> EncounterState:
    """Merge ``patch`` into one combatant; the result is normalised like stored JSON."""
    changes = _camel_patch(patch)
    if not changes:
        return state

    def apply(combatant: Combatant) -> Combatant:
        updated = Combatant.from_json({**combatant.to_json(), **changes, "id": combatant.id})
        return combatant if updated == combatant else updated

    return _map_combatant(state, combatant_id, apply)


def remove_combatant(state: EncounterState, combatant_id: str) -> EncounterState:
    if state.find(combatant_id) is None:
        logger.debug("Ignoring removal of unknown combatant %s", combatant_id)
        return state
    return _touch(
        state,
        combatants=tuple(c for c in state.combatants if c.id != combatant_id),
        active_id=None if state.active_id == combatant_id else state.active_id,
    )


def _activate(state: EncounterState, combatant_id: str, **changes: Any) -> ActionResult:
    combatant = state.find(combatant_id)
    if combatant is None:
        logger.debug("Ignoring activation of unknown combatant %s", combatant_id)
        return ActionResult(state=state, engine_events=[])
    ticked, expired = ledger.tick(combatant)
    next_state = _touch(
        state,
        combatants=tuple(ticked if c.id == combatant_id else c for c in state.combatants),
        active_id=combatant_id,
        **changes,
    )
    events: list[dict[str, Any]] = []
    if "round" in changes and changes["round"] != state.round:
        timing = "round_start" if changes["round"] > state.round else "round_rewind"
        events.append({"kind": "timing", "timing": timing, "round": changes["round"]})
    events.append({"kind": "timing", "timing": "turn_start", "actorId": combatant_id})
    for key in expired:
        events.append({"kind": "condition_expired", "actorId": combatant_id, "condition": key})
    return ActionResult(state=next_state, engine_events=events)


def _start_turn(state: EncounterState) -> ActionResult:
    order = sorted_combatants(state)
    if not order:
        return ActionResult(state=state, engine_events=[])
    first = next((c for c in order if c.initiative is not None), order[0])
    return _activate(state, first.id)


def _step_turn(state: EncounterState, step: int) -> ActionResult:
    order = sorted_combatants(state)
    if not order:
        return ActionResult(state=state, engine_events=[])
    ids = [c.id for c in order]
    if state.active_id is None or state.active_id not in ids:
        return _start_turn(state)
    index = ids.index(state.active_id)
    target = (index + step) % len(ids)
    round_number = state.round
    if step > 0 and target == 0:
        round_number = state.round + 1
    elif step < 0 and target == len(ids) - 1:
        round_number = max(1, state.round - 1)
    return _activate(state, ids[target], round=round_number)


def set_active(state: EncounterState, combatant_id: str) -> EncounterState:
    return _activate(state, combatant_id).state


def start_turn(state: EncounterState) -> EncounterState:
    return _start_turn(state).state


def next_turn(state: EncounterState) -> EncounterState:
    return _step_turn(state, 1).state


def prev_turn(state: EncounterState) -> EncounterState:
    return _step_turn(state, -1).state


def toggle_order_lock(state: EncounterState) -> EncounterState:
    return _touch(state, order_locked=not state.order_locked)


def clear_initiatives(state: EncounterState) -> EncounterState:
    return _touch(
        state,
        combatants=tuple(replace(c, initiative=None) for c in state.combatants),
        active_id=None,
    )


def restore_initiatives(state: EncounterState, snapshot: EncounterState) -> EncounterState:
    """Undo :func:`clear_initiatives` for combatants that still exist."""
    previous = {c.id: c.initiative for c in snapshot.combatants}
    ids = {c.id for c in state.combatants}
    return _touch(
        state,
        combatants=tuple(
            replace(c, initiative=previous[c.id]) if c.id in previous else c for c in state.combatants
        ),
        active_id=snapshot.active_id if snapshot.active_id in ids else state.active_id,
    )


def add_condition(state: EncounterState, combatant_id: str, key: str, rounds: int | None = None) -> EncounterState:
    return _map_combatant(state, combatant_id, lambda c: ledger.upsert(c, key, rounds))


def remove_condition(state: EncounterState, combatant_id: str, key: str) -> EncounterState:
    return _map_combatant(state, combatant_id, lambda c: ledger.remove_by_key(c, key))


def clear_conditions(state: EncounterState, combatant_id: str) -> EncounterState:
    return _map_combatant(state, combatant_id, ledger.clear)


def clear_all_conditions(state: EncounterState) -> EncounterState:
    return _touch(state, combatants=tuple(ledger.clear(c) for c in state.combatants))


def remove_all_npcs(state: EncounterState) -> EncounterState:
    kept = tuple(c for c in state.combatants if c.kind is CombatantKind.PC)
    kept_ids = {c.id for c in kept}
    return _touch(
        state,
        combatants=kept,
        active_id=state.active_id if state.active_id in kept_ids else None,
    )


def set_round(state: EncounterState, round_number: int) -> EncounterState:
    return _touch(state, round=max(1, int(round_number)))


def next_round(state: EncounterState) -> EncounterState:
    return set_round(state, state.round + 1)


def prev_round(state: EncounterState) -> EncounterState:
    return set_round(state, state.round - 1)


def move_combatant(state: EncounterState, combatant_id: str, offset: int) -> EncounterState:
    """Shift a combatant within the stored sequence, clamped to the ends."""
    ids = [c.id for c in state.combatants]
    if combatant_id not in ids:
        return state
    index = ids.index(combatant_id)
    target = min(max(index + offset, 0), len(ids) - 1)
    if target == index:
        return state
    combatants = list(state.combatants)
    combatants.insert(target, combatants.pop(index))
    return _touch(state, combatants=tuple(combatants))


def apply_encounter_action(state: EncounterState, action: dict[str, Any]) -> ActionResult:
    """Apply one action dict, e.g. ``{"type": "NEXT_TURN"}``."""
    action_type = str(action.get("type", "")).upper()
    if action_type == "START_TURN":
        return _start_turn(state)
    if action_type == "NEXT_TURN":
        return _step_turn(state, 1)
    if action_type == "PREV_TURN":
        return _step_turn(state, -1)
    if action_type == "SET_ACTIVE":
        return _activate(state, str(action.get("combatantId", "")))

    combatant_id = str(action.get("combatantId", ""))
    next_state = state
    if action_type == "ADD_COMBATANT" and isinstance(action.get("combatant"), dict):
        next_state = add_combatant(state, action["combatant"])
    elif action_type == "UPDATE_COMBATANT" and isinstance(action.get("patch"), dict):
        next_state = update_combatant(state, combatant_id, action["patch"])
    elif action_type == "REMOVE_COMBATANT":
        next_state = remove_combatant(state, combatant_id)
    elif action_type == "TOGGLE_ORDER_LOCK":
        next_state = toggle_order_lock(state)
    elif action_type == "CLEAR_INITIATIVES":
        next_state = clear_initiatives(state)
    elif action_type == "ADD_CONDITION" and isinstance(action.get("condition"), str):
        rounds = action.get("rounds")
        next_state = add_condition(state, combatant_id, action["condition"], rounds if isinstance(rounds, int) else None)
    elif action_type == "REMOVE_CONDITION" and isinstance(action.get("condition"), str):
        next_state = remove_condition(state, combatant_id, action["condition"])
    elif action_type == "CLEAR_CONDITIONS":
        next_state = clear_conditions(state, combatant_id)
    elif action_type == "CLEAR_ALL_CONDITIONS":
        next_state = clear_all_conditions(state)
    elif action_type == "REMOVE_ALL_NPCS":
        next_state = remove_all_npcs(state)
    elif action_type == "SET_ROUND" and isinstance(action.get("round"), int):
        next_state = set_round(state, action["round"])
    elif action_type == "NEXT_ROUND":
        next_state = next_round(state)
    elif action_type == "PREV_ROUND":
        next_state = prev_round(state)
    elif action_type == "MOVE_COMBATANT" and isinstance(action.get("offset"), int):
        next_state = move_combatant(state, combatant_id, action["offset"])

    if next_state is state:
        return ActionResult(state=state, engine_events=[])
    return ActionResult(state=next_state, engine_events=[{"kind": "state_changed", "action": action_type}])


class EncounterEngine:
    """One encounter snapshot kept in sync with a persistent store handle.

    Every mutation replaces the snapshot and hands its JSON form to the handle
    for debounced persistence. Snapshots written by other contexts are adopted
    when they arrive through the handle.
    """

    def __init__(self, handle: StoreHandle) -> None:
        self._handle = handle
        self._state = self._decode(handle.get()) or EncounterState.from_json(build_initial_payload())
        self._listeners: list[StateListener] = []
        self._initiative_snapshot: EncounterState | None = None
        self._unsubscribe = handle.subscribe(self._on_external_change)

    @classmethod
    async def open(cls, store: PersistentStore, key: str = ENCOUNTERS_KEY) -> EncounterEngine:
        handle = await store.open(
            key,
            build_initial_payload,
            schema_version=ENCOUNTER_SCHEMA_VERSION,
            migrate=migrate_encounter_state,
        )
        return cls(handle)

    @property
    def state(self) -> EncounterState:
        return self._state

    @property
    def handle(self) -> StoreHandle:
        return self._handle

    def order(self) -> list[Combatant]:
        return sorted_combatants(self._state)

    def active(self) -> Combatant | None:
        return self._state.find(self._state.active_id)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, action: dict[str, Any]) -> ActionResult:
        result = apply_encounter_action(self._state, action)
        self._commit(result.state)
        return result

    def add(self, combatant: Combatant | dict[str, Any]) -> Combatant:
        self._commit(add_combatant(self._state, combatant))
        return self._state.combatants[-1]

    def add_many(self, combatants: Iterable[Combatant | dict[str, Any]]) -> EncounterState:
        return self._commit(add_combatants(self._state, combatants))

    def update(self, combatant_id: str, patch: dict[str, Any]) -> EncounterState:
        return self._commit(update_combatant(self._state, combatant_id, patch))

    def remove(self, combatant_id: str) -> EncounterState:
        return self._commit(remove_combatant(self._state, combatant_id))

    def set_active(self, combatant_id: str) -> EncounterState:
        return self._commit(set_active(self._state, combatant_id))

    def start_turn(self) -> EncounterState:
        return self._commit(start_turn(self._state))

    def next_turn(self) -> EncounterState:
        return self._commit(next_turn(self._state))

    def prev_turn(self) -> EncounterState:
        return self._commit(prev_turn(self._state))

    def toggle_order_lock(self) -> EncounterState:
        return self._commit(toggle_order_lock(self._state))

    def clear_initiatives(self) -> EncounterState:
        self._initiative_snapshot = self._state
        return self._commit(clear_initiatives(self._state))

    def undo_clear_initiatives(self) -> EncounterState:
        if self._initiative_snapshot is None:
            return self._state
        snapshot, self._initiative_snapshot = self._initiative_snapshot, None
        return self._commit(restore_initiatives(self._state, snapshot))

    def add_condition(self, combatant_id: str, key: str, rounds: int | None = None) -> EncounterState:
        return self._commit(add_condition(self._state, combatant_id, key, rounds))

    def remove_condition(self, combatant_id: str, key: str) -> EncounterState:
        return self._commit(remove_condition(self._state, combatant_id, key))

    def clear_conditions(self, combatant_id: str) -> EncounterState:
        return self._commit(clear_conditions(self._state, combatant_id))

    def clear_all_conditions(self) -> EncounterState:
        return self._commit(clear_all_conditions(self._state))

    def remove_all_npcs(self) -> EncounterState:
        return self._commit(remove_all_npcs(self._state))

    def set_round(self, round_number: int) -> EncounterState:
        return self._commit(set_round(self._state, round_number))

    def move(self, combatant_id: str, offset: int) -> EncounterState:
        return self._commit(move_combatant(self._state, combatant_id, offset))

    def replace_state(self, state: EncounterState) -> EncounterState:
        return self._commit(state)

    async def reset(self) -> EncounterState:
        value = await self._handle.reset()
        self._initiative_snapshot = None
        self._state = self._decode(value) or EncounterState()
        self._notify()
        return self._state

    def dispose(self) -> None:
        self._unsubscribe()
        self._handle.dispose()
        self._listeners.clear()

    def _commit(self, next_state: EncounterState) -> EncounterState:
        if next_state is self._state:
            return self._state
        self._state = next_state
        self._handle.set(next_state.to_json())
        self._notify()
        return self._state

    def _on_external_change(self, value: Any) -> None:
        decoded = self._decode(value)
        if decoded is None:
            logger.debug("Ignoring external encounter payload of type %s", type(value).__name__)
            return
        self._state = decoded
        self._initiative_snapshot = None
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._state)

    @staticmethod
    def _decode(value: Any) -> EncounterState | None:
        if not isinstance(value, dict):
            return None
        return EncounterState.from_json(value)
