"""Backend package for the GM Assistant encounter runtime."""

from .channels import ChangeChannel, InProcessChangeChannel, StoreChange
from .config import BackendSettings, load_settings
from .drivers import InMemoryStorageDriver, JsonFileStorageDriver, PostgresStorageDriver, StorageDriver, create_driver
from .engine import EncounterEngine, apply_encounter_action, sorted_combatants
from .models import Combatant, CombatantKind, EncounterState, Timed, Untimed
from .state import ENCOUNTER_SCHEMA_VERSION, build_initial_state, migrate_encounter_state
from .store import HandleStatus, PersistentStore, StoreHandle, StoredRecord

__all__ = [
    "apply_encounter_action",
    "BackendSettings",
    "build_initial_state",
    "ChangeChannel",
    "Combatant",
    "CombatantKind",
    "create_driver",
    "ENCOUNTER_SCHEMA_VERSION",
    "EncounterEngine",
    "EncounterState",
    "HandleStatus",
    "InMemoryStorageDriver",
    "InProcessChangeChannel",
    "JsonFileStorageDriver",
    "load_settings",
    "migrate_encounter_state",
    "PersistentStore",
    "PostgresStorageDriver",
    "sorted_combatants",
    "StorageDriver",
    "StoreChange",
    "StoredRecord",
    "StoreHandle",
    "Timed",
    "Untimed",
]
