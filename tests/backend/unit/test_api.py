import json

import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from gmassist.backend.api import create_app
from gmassist.backend.drivers import InMemoryStorageDriver
from gmassist.backend.keys import ENCOUNTERS_KEY
from gmassist.backend.store import PersistentStore


def _client(driver: InMemoryStorageDriver | None = None) -> TestClient:
    store = PersistentStore(driver=driver or InMemoryStorageDriver(), debounce_ms=10)
    return TestClient(create_app(store=store, key=ENCOUNTERS_KEY))


def _add(client: TestClient, combatant: dict) -> dict:
    response = client.post(
        "/api/encounter/actions",
        json={"action": {"type": "ADD_COMBATANT", "combatant": combatant}},
    )
    assert response.status_code == 200
    return response.json()


def test_get_encounter_returns_empty_initial_state() -> None:
    with _client() as client:
        response = client.get("/api/encounter")

    assert response.status_code == 200
    data = response.json()
    assert data["state"]["combatants"] == []
    assert data["state"]["round"] == 1
    assert data["order"] == []


def test_actions_drive_turn_order() -> None:
    with _client() as client:
        _add(client, {"name": "Bob", "kind": "npc"})
        _add(client, {"name": "GoblinA", "initiative": 18, "kind": "monster"})
        added = _add(client, {"name": "Aria", "initiative": 18, "kind": "pc"})
        names = {c["id"]: c["name"] for c in added["state"]["combatants"]}

        started = client.post("/api/encounter/actions", json={"action": {"type": "START_TURN"}}).json()

    assert [names[i] for i in added["order"]] == ["Aria", "GoblinA", "Bob"]
    assert names[started["state"]["activeId"]] == "Aria"
    assert [event["timing"] for event in started["events"]] == ["turn_start"]


def test_update_with_loose_values_keeps_encounter_readable() -> None:
    with _client() as client:
        added = _add(client, {"name": "Aria", "initiative": 12, "kind": "pc"})
        aria_id = added["state"]["combatants"][0]["id"]
        updated = client.post(
            "/api/encounter/actions",
            json={
                "action": {
                    "type": "UPDATE_COMBATANT",
                    "combatantId": aria_id,
                    "patch": {"initiative": "15", "name": None, "conditions": "Prone"},
                }
            },
        )
        fetched = client.get("/api/encounter")

    assert updated.status_code == 200
    assert fetched.status_code == 200
    aria = fetched.json()["state"]["combatants"][0]
    assert aria["initiative"] == 15
    assert aria["name"] == "Aria"
    assert aria["conditions"] == []


def test_unknown_action_leaves_state_unchanged() -> None:
    with _client() as client:
        before = client.get("/api/encounter").json()
        response = client.post("/api/encounter/actions", json={"action": {"type": "SUMMON_DRAGON"}})

    assert response.status_code == 200
    assert response.json()["state"] == before["state"]
    assert response.json()["events"] == []


def test_reset_persists_empty_encounter_immediately() -> None:
    driver = InMemoryStorageDriver()
    with _client(driver) as client:
        _add(client, {"name": "Aria", "kind": "pc"})
        response = client.post("/api/encounter/reset")
        stored = json.loads(driver.items[ENCOUNTERS_KEY])

    assert response.json()["state"]["combatants"] == []
    assert stored["version"] == 2
    assert stored["value"]["combatants"] == []


def test_export_and_import_round_trip() -> None:
    with _client() as client:
        _add(client, {"name": "Aria", "initiative": 12, "kind": "pc"})
        document = client.get("/api/encounter/export").json()
        client.post("/api/encounter/reset")
        imported = client.post("/api/encounter/import", json={"document": document})

    assert imported.status_code == 200
    assert [c["name"] for c in imported.json()["state"]["combatants"]] == ["Aria"]


def test_import_rejects_invalid_document() -> None:
    with _client() as client:
        response = client.post("/api/encounter/import", json={"document": {"notes": []}})

    assert response.status_code == 422


def test_websocket_change_from_tab_is_adopted() -> None:
    with _client() as client:
        client.get("/api/encounter")
        record = {
            "version": 2,
            "value": {
                "combatants": [{"id": "t1", "name": "From Tab", "kind": "pc"}],
                "round": 3,
                "orderLocked": False,
                "activeId": "t1",
                "updatedAt": 1,
            },
        }
        with client.websocket_connect("/ws/records") as websocket:
            websocket.send_text(json.dumps({"type": "record.changed", "key": ENCOUNTERS_KEY, "payload": record}))
            with client.websocket_connect("/ws/records") as other_tab:
                other_tab.send_text(json.dumps({"type": "record.changed", "key": "gma.v1.notes", "payload": None}))
                relayed = websocket.receive_json()

        state = client.get("/api/encounter").json()["state"]

    assert relayed["key"] == "gma.v1.notes"
    assert state["round"] == 3
    assert state["activeId"] == "t1"
