"""Namespaced storage keys shared by the encounter runtime and its collaborators."""

from __future__ import annotations

DEFAULT_NAMESPACE = "gma"
STORE_MAJOR = "v1"

RECORD_NAMES = ("characters", "notes", "encounters", "resources", "settings")


def storage_key(name: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Return ``<namespace>.<major>.<name>``, e.g. ``gma.v1.encounters``."""
    return f"{namespace}.{STORE_MAJOR}.{name}"


ENCOUNTERS_KEY = storage_key("encounters")
CHARACTERS_KEY = storage_key("characters")
