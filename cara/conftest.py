import asyncio
import os
import tempfile
from pathlib import Path

# Point the app's default engine at a throwaway file before anything imports it
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{Path(tempfile.mkdtemp(prefix='cara-tests-')) / 'cara.db'}"
)

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import NullPool

from cara.config import Settings
from cara.database import AnalysisRepository, create_tables, make_engine


@pytest.fixture
def test_settings() -> Settings:
    return Settings(max_steps=50, stage_attempt_threshold=5, request_timeout=5.0)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'cara.db'}", poolclass=NullPool)
    asyncio.run(create_tables(engine))
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def repository(session_factory) -> AnalysisRepository:
    return AnalysisRepository(session_factory)
