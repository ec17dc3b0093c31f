"""Shared pytest fixtures for Workbridge tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from tests.fixtures import FakeProvider, make_channel, make_message
from workbridge.db.connection import Database
from workbridge.importer.jobs import JobService
from workbridge.importer.router import get_job_service
from workbridge.importer.store import SqliteImportStore
from workbridge.main import app


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
async def sqlite_store(db):
    return SqliteImportStore(db)


@pytest.fixture
def fake_provider():
    """Two channels; C1 has a thread, C2 a single message."""
    return FakeProvider(
        channels=[make_channel("C1", "general"), make_channel("C2", "random")],
        pages={
            "C1": [[
                make_message("M1", reply_count=1),
                make_message("M2", minutes=1),
            ]],
            "C2": [[make_message("M3", channel="C2")]],
        },
        replies={"M1": [make_message("M1R1", parent="M1", minutes=2)]},
    )


@pytest.fixture
async def job_service(db, fake_provider):
    """JobService whose runs use the scripted provider."""
    return JobService(db, provider_factory=lambda platform: fake_provider)


@pytest.fixture
async def client(job_service):
    """Async test client with in-memory DB wired into the app."""
    app.dependency_overrides[get_job_service] = lambda: job_service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
