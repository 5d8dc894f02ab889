"""Storage drivers holding the raw JSON text of persisted records."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import os
from pathlib import Path
import tempfile
from typing import Any, Protocol

from gmassist.backend.config import BackendSettings

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


class StorageDriver(Protocol):
    async def read(self, key: str) -> str | None:
        """Return the stored text for ``key`` or ``None`` when nothing is stored."""

    async def write(self, key: str, payload: str) -> None:
        """Durably replace the text stored under ``key``."""

    async def remove(self, key: str) -> None:
        """Delete ``key``; missing keys are ignored."""


@dataclass
class InMemoryStorageDriver:
    """Dict-backed driver; several stores may share one to model open tabs."""

    items: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.writes: list[tuple[str, str]] = []

    async def read(self, key: str) -> str | None:
        return self.items.get(key)

    async def write(self, key: str, payload: str) -> None:
        self.items[key] = payload
        self.writes.append((key, payload))

    async def remove(self, key: str) -> None:
        self.items.pop(key, None)


@dataclass
class JsonFileStorageDriver:
    """One ``<key>.json`` file per key; file I/O runs in a worker thread."""

    directory: Path

    def __post_init__(self) -> None:
        self.directory = Path(self.directory)

    def _path(self, key: str) -> Path:
        safe_name = key.replace(os.sep, "_")
        return self.directory / f"{safe_name}.json"

    async def read(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, key: str, payload: str) -> None:
        await asyncio.to_thread(self._write_sync, key, payload)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)

    def _read_sync(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_sync(self, key: str, payload: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove_sync(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass
class PostgresStorageDriver:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def ensure_schema(self) -> None:
        """Create the ``kv_records`` table if it does not exist yet."""
        schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()

    async def read(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, key: str, payload: str) -> None:
        await asyncio.to_thread(self._write_sync, key, payload)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)

    def _read_sync(self, key: str) -> str | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT payload FROM kv_records WHERE key = %s", (key,))
                row = cur.fetchone()
        if row is None:
            return None
        return row[0]

    def _write_sync(self, key: str, payload: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO kv_records (key, payload, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (key) DO UPDATE
                    SET payload = EXCLUDED.payload, updated_at = EXCLUDED.updated_at
                    """,
                    (key, payload),
                )
            conn.commit()

    def _remove_sync(self, key: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM kv_records WHERE key = %s", (key,))
            conn.commit()


def create_driver(settings: BackendSettings) -> StorageDriver:
    if settings.database_url:
        return PostgresStorageDriver(database_url=settings.database_url)
    if settings.data_dir:
        return JsonFileStorageDriver(directory=Path(settings.data_dir))
    return InMemoryStorageDriver()
