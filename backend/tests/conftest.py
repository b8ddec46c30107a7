"""
Test configuration and shared fixtures for the referral settlement test suite.

Uses an in-memory SQLite database with the schema created fresh for every test.
Tests that need two independent sessions (concurrent approvals, concurrent
submissions) use the file_session_factory fixture instead.
"""

import os

# Must be set before core.database creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_SCHEDULER", "false")

from typing import Callable, Generator, List, Optional, Tuple

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.database import Base
import models  # noqa: F401  (registers every table on Base.metadata)
from services.settlement_provider_client import SettlementProviderClient


def make_engine(url: str = "sqlite://"):
    """Engine with the full schema created."""
    if url == "sqlite://":
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def db_engine():
    """In-memory engine with a fresh schema for each test."""
    engine = make_engine()
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Provide a database session for a test.

    Configured like the application's SessionLocal (no autoflush, objects
    not expired on commit), so services behave as they do in production.
    """
    SessionFactory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = SessionFactory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def file_session_factory(tmp_path) -> Generator[Callable[[], Session], None, None]:
    """
    Session factory over a file-backed SQLite database.

    Every session gets its own connection, which is what the compare-and-swap
    tests need to simulate two workers reading the same rows.
    """
    engine = make_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


class RecordingNotifier:
    """Notification sink that remembers what it was asked to send."""

    def __init__(self, succeed: bool = True):
        self.sent: List[Tuple[Optional[str], str]] = []
        self.succeed = succeed

    def notify(self, agent_external_id: Optional[str], message: str) -> bool:
        self.sent.append((agent_external_id, message))
        return self.succeed


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


class FakeProvider:
    """
    In-process stand-in for the settlement provider behind httpx.MockTransport.

    Routes are registered per test as (method, path) -> callable(request)
    returning an httpx.Response, or an exception instance to raise.
    Every request is recorded.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes = {}

    def on(self, method: str, path: str, handler) -> None:
        self.routes[(method, path)] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")
        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, json={"error": {"code": "not_found", "detail": f"No route {path}"}})
        outcome = handler(request) if callable(handler) else handler
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path.removeprefix("/api") == path
        ]

    def client(self, api_key: str = "test-key") -> SettlementProviderClient:
        return SettlementProviderClient(
            api_key=api_key,
            base_url="https://provider.test/api",
            agent_id="",
            bank_account_id="",
            timeout=5,
            transport=httpx.MockTransport(self.handle),
        )


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


def provider_payment_json(payment_id: str = "9001", status_id: int = 3, title: str = "В обработке",
                          customer_payment_id: Optional[str] = None, contractor_id: Optional[str] = "555") -> dict:
    """Provider payment payload as returned under "item"."""
    item = {
        "id": payment_id,
        "status": {"id": status_id, "title": title},
        "is_final": status_id in (1, 2, 5, 6),
        "customer_payment_id": customer_payment_id,
    }
    if contractor_id is not None:
        item["contractor"] = {"id": contractor_id}
    return {"item": item}
