import os

# Settings are read once at import time, so the environment must be in place
# before anything from prospector is imported.
os.environ["ENV"] = "dev"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6399/15"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("API_AUTH_KEY", None)
os.environ.pop("MAPBOX_ACCESS_TOKEN", None)
os.environ.pop("PERPLEXITY_API_KEY", None)
os.environ.pop("OPENROUTER_API_KEY", None)
os.environ.pop("OPENAI_API_KEY", None)

from unittest.mock import AsyncMock, patch

import pytest

from prospector.core.db import Base, SessionLocal, engine, get_db
from prospector.models import (  # noqa: F401  registers tables on Base.metadata
    agent_memory,
    discovery_session,
    prospect_dossier,
    research_job,
    research_report,
    research_request,
)


@pytest.fixture(autouse=True)
def no_redis():
    """Every cache lookup misses and writes are dropped."""
    with patch("prospector.services.geocoding.cached_get", new=AsyncMock(return_value=None)) as m:
        yield m


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient

    from prospector.main import app

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
