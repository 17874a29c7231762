from __future__ import annotations

from types import SimpleNamespace

import pytest

from orgaccess.core.config import Settings
from orgaccess.persistence.db import SNAPSHOT_ISOLATION, begin_snapshot, engine_options


def test_sqlite_keeps_driver_defaults() -> None:
    options = engine_options(Settings(database_url="sqlite+aiosqlite:///:memory:"))
    assert options == {"pool_pre_ping": True}


def test_postgres_pool_is_bounded_and_timeout_is_optional() -> None:
    options = engine_options(
        Settings(
            database_url="postgresql+asyncpg://u:p@db/orgaccess",
            api_db_pool_size=0,
            api_db_max_overflow=-3,
        )
    )
    assert options["pool_size"] == 1
    assert options["max_overflow"] == 0
    assert "connect_args" not in options

    timed = engine_options(
        Settings(database_url="postgresql+asyncpg://u:p@db/orgaccess", api_db_statement_timeout_ms=2500)
    )
    assert timed["connect_args"] == {"server_settings": {"statement_timeout": "2500"}}


class _FakeSession:
    def __init__(self, dialect: str) -> None:
        self.bind = SimpleNamespace(dialect=SimpleNamespace(name=dialect))
        self.connection_options: list[dict] = []

    async def connection(self, execution_options: dict | None = None) -> None:
        self.connection_options.append(execution_options or {})


@pytest.mark.asyncio
async def test_begin_snapshot_requests_repeatable_read_on_postgres() -> None:
    session = _FakeSession("postgresql")
    await begin_snapshot(session)
    assert SNAPSHOT_ISOLATION == "REPEATABLE READ"
    assert session.connection_options == [{"isolation_level": "REPEATABLE READ"}]


@pytest.mark.asyncio
async def test_begin_snapshot_leaves_sqlite_alone() -> None:
    session = _FakeSession("sqlite")
    await begin_snapshot(session)
    assert session.connection_options == []
