import pytest
import os
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pulsecrm.models  # noqa: F401
from pulsecrm.core.config import settings
from pulsecrm.core.deps import get_db
from pulsecrm.db.base import Base
from pulsecrm.main import app
from pulsecrm.routers.auth import login_rate_limiter


@pytest.fixture()
def session_local():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def test_context(session_local):
    original = (
        settings.secret_key,
        settings.delivery_worker_enabled,
        settings.campaign_start_delay_seconds,
        settings.delivery_pacing_seconds,
        settings.ai_provider,
    )
    settings.secret_key = "test-secret-key"
    # Campaign runs are driven explicitly in tests; the API only has to enqueue them.
    settings.delivery_worker_enabled = False
    settings.campaign_start_delay_seconds = 0
    settings.delivery_pacing_seconds = 0
    settings.ai_provider = "stub"

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.session_factory = session_local

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    app.state.session_factory = None
    (
        settings.secret_key,
        settings.delivery_worker_enabled,
        settings.campaign_start_delay_seconds,
        settings.delivery_pacing_seconds,
        settings.ai_provider,
    ) = original
    login_rate_limiter.clear()
