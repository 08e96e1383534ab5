from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from fakes import FakeClock
from sidecar.config import Settings
from sidecar.services.database import ResearchDatabase


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path):
    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "openrouter_api_key": "",
            "semantic_dedup_enabled": False,
            "data_dir": str(tmp_path / "data"),
            "chroma_persist_dir": str(tmp_path / "chroma"),
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = ResearchDatabase(tmp_path / "research.db")
    await database.connect()
    yield database
    await database.close()
