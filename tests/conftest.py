from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from featureinfo.main import app
from featureinfo.core.config import Settings
from featureinfo.core.config_store import ConfigStore
from featureinfo.core.context import build_context, get_context

from fakes import (
    NOW,
    SENSOR,
    FakeExecutor,
    FakeProvider,
    FakeServices,
    FakeStore,
    make_templates,
)


@pytest.fixture
def settings():
    # Explicit values only, never the developer's .env
    return Settings(
        _env_file=None,
        FIA_CONFIG_FILE=None,
        QUERY_TIMEOUT=0.2,
        REQUEST_TIMEOUT=5.0,
        DEFAULT_HOURS=24,
    )


@pytest.fixture
def config():
    return ConfigStore(make_templates(), {"hours": 6, "database_name": "postgres"})


@pytest.fixture
def executor():
    return FakeExecutor(
        {
            "kb": {
                "class": [{"class": SENSOR}],
                "meta": [
                    {"Property": "Name", "Value": "Sensor 1"},
                    {"Property": "Height", "Value": "12", "Unit": "m"},
                ],
                "time": [
                    {"Measurement": "urn:stream:temp", "Name": "Temperature", "Unit": "degC"}
                ],
            },
            "ontology": {"class": []},
        }
    )


@pytest.fixture
def services():
    return FakeServices()


@pytest.fixture
def store():
    return FakeStore(
        {
            "urn:stream:temp": [
                (datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc), 20.5),
                (datetime(2026, 10, 18, 11, 0, tzinfo=timezone.utc), 21.0),
            ]
        }
    )


@pytest_asyncio.fixture(scope="function")
async def context(settings, config, executor, services, store):
    context = build_context(
        settings,
        config=config,
        executor=executor,
        services=services,
        stores=FakeProvider(store),
    )
    context.orchestrator.timeseries.clock = lambda: NOW
    await context.start()
    yield context
    await context.close()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(context):
    app.dependency_overrides[get_context] = lambda: context

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
