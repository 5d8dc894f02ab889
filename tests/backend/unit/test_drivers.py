import asyncio
import threading

import pytest

from gmassist.backend import migrate
from gmassist.backend.config import BackendSettings
from gmassist.backend.drivers import (
    InMemoryStorageDriver,
    JsonFileStorageDriver,
    PostgresStorageDriver,
    create_driver,
)


def _settings(database_url: str | None = None, data_dir: str | None = None) -> BackendSettings:
    return BackendSettings(
        database_url=database_url,
        data_dir=data_dir,
        debounce_ms=300,
        namespace="gma",
        host="127.0.0.1",
        port=8000,
        log_level="INFO",
    )


def test_create_driver_prefers_postgres_then_files_then_memory(tmp_path) -> None:
    assert isinstance(create_driver(_settings(database_url="postgresql://local")), PostgresStorageDriver)
    assert isinstance(create_driver(_settings(data_dir=str(tmp_path))), JsonFileStorageDriver)
    assert isinstance(create_driver(_settings()), InMemoryStorageDriver)


def test_json_file_driver_round_trips_and_removes(tmp_path) -> None:
    async def scenario() -> None:
        driver = JsonFileStorageDriver(directory=tmp_path / "data")

        assert await driver.read("gma.v1.encounters") is None
        await driver.write("gma.v1.encounters", '{"version": 2, "value": {}}')
        assert await driver.read("gma.v1.encounters") == '{"version": 2, "value": {}}'
        assert sorted(p.name for p in (tmp_path / "data").iterdir()) == ["gma.v1.encounters.json"]

        await driver.remove("gma.v1.encounters")
        await driver.remove("gma.v1.encounters")
        assert await driver.read("gma.v1.encounters") is None

    asyncio.run(scenario())


class _FakeCursor:
    def __init__(self, row: tuple | None = None) -> None:
        self.commands: list[tuple[str, tuple]] = []
        self.row = row

    def execute(self, sql: str, params: tuple = ()) -> None:
        self.commands.append((sql, params))

    def fetchone(self) -> tuple | None:
        return self.row

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self, row: tuple | None = None) -> None:
        self.cursor_instance = _FakeCursor(row)
        self.committed = False

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def commit(self) -> None:
        self.committed = True

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _PostgresDriverWithFakeConnection(PostgresStorageDriver):
    def __init__(self, row: tuple | None = None) -> None:
        super().__init__(database_url="postgresql://local")
        self.fake_connection = _FakeConnection(row)

    def _connect(self) -> _FakeConnection:
        return self.fake_connection


def test_postgres_driver_upserts_payload() -> None:
    driver = _PostgresDriverWithFakeConnection()

    asyncio.run(driver.write("gma.v1.encounters", '{"version": 2, "value": {}}'))

    sql, params = driver.fake_connection.cursor_instance.commands[0]
    assert "INSERT INTO kv_records" in sql
    assert "ON CONFLICT (key) DO UPDATE" in sql
    assert params == ("gma.v1.encounters", '{"version": 2, "value": {}}')
    assert driver.fake_connection.committed is True


def test_postgres_driver_reads_payload_or_none() -> None:
    present = _PostgresDriverWithFakeConnection(row=('{"version": 1, "value": 3}',))
    missing = _PostgresDriverWithFakeConnection(row=None)

    assert asyncio.run(present.read("k")) == '{"version": 1, "value": 3}'
    assert asyncio.run(missing.read("k")) is None
    assert "SELECT payload FROM kv_records" in present.fake_connection.cursor_instance.commands[0][0]


def test_postgres_driver_remove_deletes_row() -> None:
    driver = _PostgresDriverWithFakeConnection()

    asyncio.run(driver.remove("k"))

    assert driver.fake_connection.cursor_instance.commands == [("DELETE FROM kv_records WHERE key = %s", ("k",))]
    assert driver.fake_connection.committed is True


def test_json_file_driver_does_file_io_off_the_event_loop_thread(tmp_path) -> None:
    driver = JsonFileStorageDriver(directory=tmp_path)
    io_threads: list[int] = []
    write_sync = driver._write_sync
    read_sync = driver._read_sync

    def recording_write(key: str, payload: str) -> None:
        io_threads.append(threading.get_ident())
        write_sync(key, payload)

    def recording_read(key: str) -> str | None:
        io_threads.append(threading.get_ident())
        return read_sync(key)

    driver._write_sync = recording_write
    driver._read_sync = recording_read

    async def scenario() -> str | None:
        await driver.write("k", "1")
        return await driver.read("k")

    assert asyncio.run(scenario()) == "1"
    assert len(io_threads) == 2
    assert threading.get_ident() not in io_threads


def test_postgres_driver_ensure_schema_creates_kv_records() -> None:
    driver = _PostgresDriverWithFakeConnection()

    driver.ensure_schema()

    sql, _ = driver.fake_connection.cursor_instance.commands[0]
    assert "CREATE TABLE IF NOT EXISTS kv_records" in sql
    assert driver.fake_connection.committed is True


def test_migrate_requires_database_url(monkeypatch) -> None:
    monkeypatch.delenv("GMASSIST_DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="GMASSIST_DATABASE_URL"):
        migrate.main()


def test_migrate_applies_schema_through_driver(monkeypatch) -> None:
    applied: list[str] = []
    monkeypatch.setenv("GMASSIST_DATABASE_URL", "postgresql://local/gma")
    monkeypatch.setattr(
        PostgresStorageDriver,
        "ensure_schema",
        lambda self: applied.append(self.database_url),
    )

    migrate.main()

    assert applied == ["postgresql://local/gma"]
