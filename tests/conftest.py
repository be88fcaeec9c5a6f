"""Shared fixtures: in-memory SQLite, no API key, fresh sessions per test."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("ANTHROPIC_API_KEY", None)

import pytest

from app.database import Base, SessionLocal, engine
from app.services.session import sessions


@pytest.fixture(autouse=True)
def clean_state():
    import app.models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    sessions.clear()
    yield
    sessions.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(monkeypatch):
    from fastapi.testclient import TestClient
    from app.main import app

    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with TestClient(app) as test_client:
        yield test_client
