import pytest

from gmassist.backend.errors import EncounterMigrationError
from gmassist.backend.keys import ENCOUNTERS_KEY, storage_key
from gmassist.backend.state import ENCOUNTER_SCHEMA_VERSION, build_initial_state, migrate_encounter_state


def test_build_initial_state_is_empty_round_one() -> None:
    state = build_initial_state()

    assert state.combatants == ()
    assert state.round == 1
    assert state.order_locked is False
    assert state.active_id is None
    assert state.updated_at > 0


def test_storage_keys_are_namespaced() -> None:
    assert ENCOUNTERS_KEY == "gma.v1.encounters"
    assert storage_key("notes", namespace="test") == "test.v1.notes"


def test_migrate_v1_renames_fields_and_infers_kind() -> None:
    stored = {
        "combatants": [
            {"id": "a", "name": "Aria", "init": 18, "hp": 22, "ac": 15, "isPC": True, "pcId": "pc-1"},
            {"id": "g", "name": "Goblin", "init": 12, "hp": 7, "ac": 13, "tags": ["CR 1/4"], "conditions": ["Prone"]},
            {"id": "n", "name": "Guard", "init": None, "conditions": [{"key": "Frightened", "rounds": 2}]},
        ],
        "round": 3,
        "orderLocked": True,
        "updatedAt": 1700000000000,
    }

    migrated = migrate_encounter_state(1, stored)

    aria, goblin, guard = migrated["combatants"]
    assert aria["initiative"] == 18
    assert aria["hitPoints"] == 22
    assert aria["armorClass"] == 15
    assert aria["kind"] == "pc"
    assert goblin["kind"] == "monster"
    assert goblin["conditions"] == ["Prone"]
    assert guard["kind"] == "npc"
    assert guard["conditions"] == [{"key": "Frightened", "rounds": 2}]
    assert migrated["round"] == 3
    assert migrated["orderLocked"] is True
    assert migrated["activeId"] is None


def test_migrate_legacy_combatant_list() -> None:
    migrated = migrate_encounter_state(0, [{"id": "x", "name": "Bob", "init": 4}])

    assert [c["name"] for c in migrated["combatants"]] == ["Bob"]
    assert migrated["combatants"][0]["initiative"] == 4
    assert migrated["round"] == 1


def test_migrate_rejects_non_encounter_data() -> None:
    with pytest.raises(EncounterMigrationError):
        migrate_encounter_state(1, {"notes": []})


def test_migrate_rejects_newer_versions() -> None:
    with pytest.raises(EncounterMigrationError):
        migrate_encounter_state(ENCOUNTER_SCHEMA_VERSION + 1, {"combatants": []})
