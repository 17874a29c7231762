from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway sqlite file before any orgaccess module builds it.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'orgaccess-test-{os.getpid()}.db')}",
)
# Give the sqlite-backed audit sink room to finish inside the emit timeout.
os.environ.setdefault("AUTHZ_AUDIT_TIMEOUT_MS", "5000")

import pytest  # noqa: E402

from orgaccess.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()
