import os
from concurrent.futures import Future

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import crm_automation.models  # noqa: F401
from crm_automation.core.config import settings
from crm_automation.core.deps import get_db, get_engine
from crm_automation.db.base import Base
from crm_automation.main import app
from crm_automation.services.engine import AutomationEngine
from crm_automation.services.task_queue import BackgroundTaskQueue


class InlineTaskQueue(BackgroundTaskQueue):
    """Runs queued work on the calling thread; the in-memory database has a single connection."""

    def submit(self, fn, *args):
        future = Future()
        future.set_result(self._run(fn, *args))
        return future

    def submit_many(self, tasks):
        for fn, args in tasks:
            self.submit(fn, *args)


class WebhookTarget:
    """Receiving end of outbound HTTP calls made through the engine's client."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.body = '{"ok":true}'
        self.unreachable = False
        self.unreachable_hosts: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable or request.url.host in self.unreachable_hosts:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status_code, text=self.body)


@pytest.fixture()
def session_local():
    original_secret = settings.secret_key
    settings.secret_key = "test-secret-key"

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    yield session_local

    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    settings.secret_key = original_secret


@pytest.fixture()
def webhook_target():
    return WebhookTarget()


@pytest.fixture()
def automation(session_local, webhook_target):
    engine = AutomationEngine(
        session_factory=session_local,
        transport=httpx.MockTransport(webhook_target),
        queue=InlineTaskQueue(max_workers=1),
    )
    yield engine
    engine.shutdown(wait=True)


@pytest.fixture()
def test_context(session_local, automation):
    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: automation

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
