"""Versioned, debounced key-value persistence over an injectable storage driver."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import json
import logging
from typing import Any, Callable
import uuid

from gmassist.backend.channels import ChangeChannel, StoreChange
from gmassist.backend.drivers import StorageDriver
from gmassist.backend.errors import HandleDisposedError

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 300
LEGACY_VERSION = 0

MigrateFn = Callable[[int, Any], Any]
ErrorCallback = Callable[[str, BaseException], None]
ValueListener = Callable[[Any], None]

_NOTHING = object()


@dataclass(frozen=True)
class StoredRecord:
    """The only shape ever written to a backing key."""

    version: int
    value: Any

    def to_json(self) -> str:
        return json.dumps({"version": self.version, "value": self.value})


def decode_record(raw: str | None) -> StoredRecord | None:
    """Parse stored text into a record.

    Unparseable text yields ``None`` (treated as absent). A JSON value without
    the version envelope is a legacy value and is tagged with version 0.
    Records written by the browser build carry ``__v`` instead of ``version``.
    """
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if isinstance(parsed, dict) and "value" in parsed:
        version = parsed.get("version", parsed.get("__v"))
        if isinstance(version, int) and not isinstance(version, bool):
            return StoredRecord(version=version, value=parsed["value"])
    return StoredRecord(version=LEGACY_VERSION, value=parsed)


class HandleStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    HYDRATING = "hydrating"
    READY = "ready"
    DISPOSED = "disposed"


class StoreHandle:
    """One logical key bound to a :class:`PersistentStore`."""

    def __init__(
        self,
        store: PersistentStore,
        key: str,
        initial_value: Any,
        schema_version: int,
        migrate: MigrateFn | None,
    ) -> None:
        self._store = store
        self.key = key
        self.schema_version = schema_version
        self._initial_factory = initial_value if callable(initial_value) else None
        self._initial = initial_value() if callable(initial_value) else initial_value
        self._migrate = migrate
        self._value: Any = self._initial
        self._pending: Any = _NOTHING
        self._queued: Any = _NOTHING
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._listeners: list[ValueListener] = []
        self._detach_channel: Callable[[], None] | None = None
        self._hydration_change: StoredRecord | None = None
        self.status = HandleStatus.UNINITIALIZED

    @property
    def initial_value(self) -> Any:
        if self._initial_factory is not None:
            return self._initial_factory()
        return self._initial

    @property
    def ready(self) -> bool:
        return self.status is HandleStatus.READY

    @property
    def has_pending_write(self) -> bool:
        return self._pending is not _NOTHING

    def get(self) -> Any:
        return self._value

    async def hydrate(self) -> Any:
        if self.status is not HandleStatus.UNINITIALIZED:
            return self._value
        self.status = HandleStatus.HYDRATING
        if self._store.channel is not None:
            self._detach_channel = self._store.channel.subscribe(self._on_change)
        self._value = await self._load()
        if self.status is HandleStatus.DISPOSED:
            return self._value
        if self._hydration_change is not None:
            # another context wrote while the stored value was being read
            self._value, self._hydration_change = self._hydration_change.value, None
        self.status = HandleStatus.READY
        if self._queued is not _NOTHING:
            queued, self._queued = self._queued, _NOTHING
            self.set(queued)
        return self._value

    async def _load(self) -> Any:
        store = self._store
        try:
            raw = await store.driver.read(self.key)
        except Exception as exc:
            logger.warning("Reading %s failed, treating as absent: %s", self.key, exc)
            raw = None

        record = decode_record(raw)
        if record is None:
            if raw is not None:
                logger.warning("Stored value for %s is unreadable, using initial value", self.key)
            await store._write_record(self.key, StoredRecord(self.schema_version, self._initial))
            return self._initial

        if record.version == self.schema_version:
            logger.info("Hydrated %s at version %s", self.key, record.version)
            return record.value

        if self._migrate is None:
            logger.warning(
                "No migration for %s from version %s to %s; stored value discarded",
                self.key,
                record.version,
                self.schema_version,
            )
            store._report_error(
                self.key,
                LookupError(f"no migration from version {record.version} to {self.schema_version}"),
            )
            await store._write_record(self.key, StoredRecord(self.schema_version, self._initial))
            return self._initial

        try:
            migrated = self._migrate(record.version, record.value)
        except Exception as exc:
            logger.warning(
                "Migration of %s from version %s to %s failed; stored value discarded: %s",
                self.key,
                record.version,
                self.schema_version,
                exc,
            )
            store._report_error(self.key, exc)
            await store._write_record(self.key, StoredRecord(self.schema_version, self._initial))
            return self._initial

        logger.info("Migrated %s from version %s to %s", self.key, record.version, self.schema_version)
        await store._write_record(self.key, StoredRecord(self.schema_version, migrated))
        return migrated

    def set(self, value: Any) -> None:
        """Replace the value and schedule one debounced durable write."""
        if self.status is HandleStatus.DISPOSED:
            raise HandleDisposedError(f"handle for {self.key} is disposed")
        if self.status is not HandleStatus.READY:
            self._queued = value
            self._value = value
            return
        self._value = value
        self._pending = value
        self._schedule_write()

    def subscribe(self, listener: ValueListener) -> Callable[[], None]:
        """Call ``listener(value)`` when another context changes this key."""
        if self.status is HandleStatus.DISPOSED:
            raise HandleDisposedError(f"handle for {self.key} is disposed")
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def flush(self) -> None:
        """Write any pending value now instead of waiting for the quiet window."""
        if self.status is HandleStatus.DISPOSED:
            raise HandleDisposedError(f"handle for {self.key} is disposed")
        self._cancel_timer()
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        if self._pending is not _NOTHING:
            await self._write_pending()

    async def reset(self) -> Any:
        """Restore the initial value and persist it immediately."""
        if self.status is HandleStatus.DISPOSED:
            raise HandleDisposedError(f"handle for {self.key} is disposed")
        self._cancel_timer()
        self._pending = _NOTHING
        if self._flush_task is not None and not self._flush_task.done():
            # an older snapshot is mid-write and must not land after the reset
            await self._flush_task
            self._cancel_timer()
            self._pending = _NOTHING
        self._value = self.initial_value
        await self._store._write_record(self.key, StoredRecord(self.schema_version, self._value))
        return self._value

    def dispose(self) -> None:
        if self.status is HandleStatus.DISPOSED:
            return
        self.status = HandleStatus.DISPOSED
        self._cancel_timer()
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None
        self._pending = _NOTHING
        self._queued = _NOTHING
        if self._detach_channel is not None:
            self._detach_channel()
            self._detach_channel = None
        self._listeners.clear()
        self._store._forget(self)

    def _schedule_write(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._store.debounce_ms / 1000, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self.status is not HandleStatus.READY:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._write_pending())

    async def _write_pending(self) -> None:
        if self._pending is _NOTHING:
            return
        value, self._pending = self._pending, _NOTHING
        await self._store._write_record(self.key, StoredRecord(self.schema_version, value))

    def _on_change(self, change: StoreChange) -> None:
        if change.key != self.key or change.origin == self._store.context_id:
            return
        if self.status not in (HandleStatus.HYDRATING, HandleStatus.READY):
            return
        record = decode_record(change.payload)
        if record is None or record.version != self.schema_version:
            logger.debug("Ignoring change for %s with unexpected payload", self.key)
            return
        if self.status is HandleStatus.HYDRATING:
            self._hydration_change = record
            return
        self._cancel_timer()
        self._pending = _NOTHING
        self._value = record.value
        for listener in list(self._listeners):
            listener(record.value)


class PersistentStore:
    """Owns hydration, migration, debounced write-back and change propagation.

    Each store instance is one execution context; its ``context_id`` tags every
    change it publishes so its own handles never react to their own writes.
    """

    def __init__(
        self,
        driver: StorageDriver,
        channel: ChangeChannel | None = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        on_error: ErrorCallback | None = None,
        context_id: str | None = None,
    ) -> None:
        self.driver = driver
        self.channel = channel
        self.debounce_ms = debounce_ms
        self.on_error = on_error
        self.context_id = context_id or uuid.uuid4().hex
        self._handles: list[StoreHandle] = []

    def create_handle(
        self,
        key: str,
        initial_value: Any,
        schema_version: int = 1,
        migrate: MigrateFn | None = None,
    ) -> StoreHandle:
        handle = StoreHandle(
            store=self,
            key=key,
            initial_value=initial_value,
            schema_version=schema_version,
            migrate=migrate,
        )
        self._handles.append(handle)
        return handle

    async def open(
        self,
        key: str,
        initial_value: Any,
        schema_version: int = 1,
        migrate: MigrateFn | None = None,
    ) -> StoreHandle:
        handle = self.create_handle(key, initial_value, schema_version=schema_version, migrate=migrate)
        await handle.hydrate()
        return handle

    async def read_record(self, key: str) -> StoredRecord | None:
        return decode_record(await self.driver.read(key))

    async def close(self) -> None:
        for handle in list(self._handles):
            if handle.ready:
                await handle.flush()
            handle.dispose()

    @property
    def handles(self) -> tuple[StoreHandle, ...]:
        return tuple(self._handles)

    def _forget(self, handle: StoreHandle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    def _report_error(self, key: str, exc: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(key, exc)
        except Exception:
            logger.exception("Error callback failed for key %s", key)

    async def _write_record(self, key: str, record: StoredRecord) -> bool:
        try:
            payload = record.to_json()
            await self.driver.write(key, payload)
        except Exception as exc:
            logger.error("Persisting %s failed; keeping in-memory value: %s", key, exc)
            self._report_error(key, exc)
            return False
        if self.channel is not None:
            try:
                await self.channel.publish(StoreChange(key=key, payload=payload, origin=self.context_id))
            except Exception as exc:
                logger.error("Publishing change for %s failed: %s", key, exc)
                self._report_error(key, exc)
        return True
