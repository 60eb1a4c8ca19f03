import os
import tempfile

# Must be set before src.* is imported: settings and the engine are module globals
_TEST_DIR = tempfile.mkdtemp(prefix="mask-aggregation-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR}/aggregation.db")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ.setdefault("APPEND_RETRY_DELAY_SECONDS", "0")

import pytest
from httpx import AsyncClient, ASGITransport
from typing import AsyncGenerator

from src.core.database import build_engine, create_db_and_tables
from src.engines.aggregation.store import AggregationJobStore
from src.main import app


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path}/jobs.db")
    create_db_and_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def store(engine) -> AggregationJobStore:
    return AggregationJobStore(engine)


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
