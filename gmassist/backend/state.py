"""State builders and schema migrations for encounter snapshots."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from gmassist.backend.errors import EncounterMigrationError
from gmassist.backend.models import EncounterState

ENCOUNTER_SCHEMA_VERSION = 2

_V1_FIELD_RENAMES = {
    "init": "initiative",
    "hp": "hitPoints",
    "ac": "armorClass",
    "monKey": "monsterKey",
}


def utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def build_initial_state() -> EncounterState:
    """Return the empty encounter used at first load and on reset."""
    return EncounterState(combatants=(), round=1, order_locked=False, active_id=None, updated_at=utc_now_ms())


def build_initial_payload() -> dict[str, Any]:
    return build_initial_state().to_json()


def migrate_encounter_state(from_version: int, data: Any) -> dict[str, Any]:
    """Upgrade a stored encounter payload to the current schema.

    Version 0 is any unversioned value left by older builds, either the
    encounter object itself or a bare list of combatants. Version 1 used
    ``init``/``hp``/``ac`` and an ``isPC`` flag instead of ``kind``.
    """
    if from_version > ENCOUNTER_SCHEMA_VERSION:
        raise EncounterMigrationError(f"cannot downgrade encounter from version {from_version}")
    if from_version == ENCOUNTER_SCHEMA_VERSION:
        return EncounterState.from_json(_require_encounter(data)).to_json()

    if from_version == 0 and isinstance(data, list):
        data = {"combatants": data}
    payload = _require_encounter(data)

    combatants = [_migrate_v1_combatant(raw) for raw in payload["combatants"] if isinstance(raw, dict)]
    upgraded = dict(payload)
    upgraded["combatants"] = combatants
    upgraded.setdefault("activeId", None)
    return EncounterState.from_json(upgraded).to_json()


def _require_encounter(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict) or not isinstance(data.get("combatants"), list):
        raise EncounterMigrationError("stored encounter has no combatant list")
    return data


def _migrate_v1_combatant(raw: dict[str, Any]) -> dict[str, Any]:
    combatant = dict(raw)
    for old_name, new_name in _V1_FIELD_RENAMES.items():
        if old_name in combatant and new_name not in combatant:
            combatant[new_name] = combatant.pop(old_name)
    if "kind" not in combatant and combatant.pop("isPC", False) is True:
        combatant["kind"] = "pc"
    return combatant
