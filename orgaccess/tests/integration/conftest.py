from __future__ import annotations

import pytest

from orgaccess.persistence.db import create_schema


@pytest.fixture(autouse=True)
async def ensure_schema() -> None:
    # Tests use unique tenant ids, so the schema is created once and rows are left in place.
    await create_schema()
    yield
