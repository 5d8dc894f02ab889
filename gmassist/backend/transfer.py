"""Encounter import/export documents."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from gmassist.backend.errors import EncounterImportError, EncounterMigrationError
from gmassist.backend.models import EncounterState
from gmassist.backend.state import ENCOUNTER_SCHEMA_VERSION, migrate_encounter_state, utc_now_ms


def export_encounter(state: EncounterState) -> dict[str, Any]:
    return {
        "version": ENCOUNTER_SCHEMA_VERSION,
        "exportedAt": datetime.now(timezone.utc).isoformat(),
        "encounter": state.to_json(),
    }


def import_encounter(document: Any) -> EncounterState:
    """Accept an exported document or a bare encounter object."""
    if not isinstance(document, dict):
        raise EncounterImportError("encounter document must be a JSON object")
    incoming = document.get("encounter", document)
    version = document.get("version", 1) if "encounter" in document else 1
    if not isinstance(version, int) or isinstance(version, bool):
        version = 1
    try:
        payload = migrate_encounter_state(version, incoming)
    except EncounterMigrationError as exc:
        raise EncounterImportError(str(exc)) from exc
    return replace(EncounterState.from_json(payload), updated_at=utc_now_ms())
