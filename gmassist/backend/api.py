"""FastAPI endpoints for the encounter runtime and websocket record sync."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
from typing import Any, AsyncIterator, Callable

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .channels import ChangeListener, StoreChange
from .config import configure_logging, load_settings
from .drivers import create_driver
from .engine import EncounterEngine
from .errors import EncounterImportError
from .keys import storage_key
from .models import EncounterState
from .store import PersistentStore
from .transfer import export_encounter, import_encounter

logger = logging.getLogger(__name__)


class ActionEnvelope(BaseModel):
    action: dict[str, Any]


class ImportEnvelope(BaseModel):
    document: dict[str, Any]


class EncounterStateResponse(BaseModel):
    state: dict[str, Any]
    order: list[str]


class ActionResponse(EncounterStateResponse):
    events: list[dict[str, Any]]


class WebSocketChangeHub:
    """Change channel whose other contexts are browser tabs connected by websocket."""

    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()
        self._listeners: list[ChangeListener] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(self, change: StoreChange) -> None:
        await self._broadcast(change, exclude=None)

    async def receive(self, websocket: WebSocket, message: dict[str, Any]) -> None:
        if message.get("type") != "record.changed" or not isinstance(message.get("key"), str):
            return
        payload = message.get("payload")
        if payload is not None and not isinstance(payload, str):
            payload = json.dumps(payload)
        change = StoreChange(key=message["key"], payload=payload, origin=f"ws:{id(websocket)}")
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Change listener failed for key %s", change.key)
        await self._broadcast(change, exclude=websocket)

    async def _broadcast(self, change: StoreChange, exclude: WebSocket | None) -> None:
        message = {"type": "record.changed", "key": change.key, "payload": change.payload, "origin": change.origin}
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections):
            if websocket is exclude:
                continue
            try:
                await websocket.send_json(message)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(websocket)


def _state_response(state: EncounterState, engine: EncounterEngine) -> dict[str, Any]:
    return {"state": state.to_json(), "order": [c.id for c in engine.order()]}


def create_app(store: PersistentStore | None = None, key: str | None = None) -> FastAPI:
    settings = load_settings()
    hub = WebSocketChangeHub()
    if store is None:
        configure_logging(settings.log_level)
        store = PersistentStore(
            driver=create_driver(settings),
            channel=hub,
            debounce_ms=settings.debounce_ms,
        )
    elif store.channel is None:
        store.channel = hub
    record_key = key or storage_key("encounters", settings.namespace)
    engine_lock = asyncio.Lock()
    engines: list[EncounterEngine] = []

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await store.close()

    app = FastAPI(title="GM Assistant Encounter API", version="0.3.0", lifespan=lifespan)
    app.state.change_hub = hub
    app.state.store = store

    async def get_engine() -> EncounterEngine:
        async with engine_lock:
            if not engines:
                engines.append(await EncounterEngine.open(store, key=record_key))
            return engines[0]

    @app.get("/api/encounter", response_model=EncounterStateResponse)
    async def get_encounter(engine: EncounterEngine = Depends(get_engine)) -> dict[str, Any]:
        return _state_response(engine.state, engine)

    @app.post("/api/encounter/actions", response_model=ActionResponse)
    async def post_action(
        payload: ActionEnvelope,
        engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        result = engine.dispatch(payload.action)
        response = _state_response(engine.state, engine)
        response["events"] = result.engine_events
        return response

    @app.post("/api/encounter/reset", response_model=EncounterStateResponse)
    async def post_reset(engine: EncounterEngine = Depends(get_engine)) -> dict[str, Any]:
        state = await engine.reset()
        return _state_response(state, engine)

    @app.get("/api/encounter/export")
    async def get_export(engine: EncounterEngine = Depends(get_engine)) -> dict[str, Any]:
        return export_encounter(engine.state)

    @app.post("/api/encounter/import", response_model=EncounterStateResponse)
    async def post_import(
        payload: ImportEnvelope,
        engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        try:
            imported = import_encounter(payload.document)
        except EncounterImportError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        state = engine.replace_state(imported)
        return _state_response(state, engine)

    @app.websocket("/ws/records")
    async def records_ws(websocket: WebSocket) -> None:
        await hub.connect(websocket)
        try:
            while True:
                try:
                    message = json.loads(await websocket.receive_text())
                except ValueError:
                    continue
                if isinstance(message, dict):
                    await hub.receive(websocket, message)
        except WebSocketDisconnect:
            hub.disconnect(websocket)

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = load_settings()
    uvicorn.run("gmassist.backend.api:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
