"""Shared test fixtures."""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import anchorwatch.config as config_module
import anchorwatch.database as db_module
import anchorwatch.main as main_module
from anchorwatch.anchor.models import AnchorRecord  # noqa: F401
from anchorwatch.main import app
from anchorwatch.pairing.models import PairingStateRecord  # noqa: F401
from anchorwatch.remote.memory import InMemoryDatabase


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def env_file(tmp_path, monkeypatch):
    """Point .env reads and writes at a temporary file."""
    path = tmp_path / ".env"
    monkeypatch.setattr(config_module, "_ENV_FILE", path)
    return path


@pytest.fixture
def client(engine, env_file, tmp_path, monkeypatch) -> Generator[TestClient, None, None]:
    """FastAPI TestClient running one device against the test DB and a fresh remote tree."""
    # No GPS polling in API tests; positions are published by hand
    monkeypatch.setenv("ANCHORWATCH_GPS_MODE", "none")
    monkeypatch.setenv("ANCHORWATCH_REMOTE_MODE", "memory")
    monkeypatch.setattr(db_module.settings, "db_path", tmp_path / "anchorwatch.db")
    monkeypatch.setattr(db_module, "engine", engine)
    monkeypatch.setattr(main_module, "memory_database", InMemoryDatabase())

    with TestClient(app) as c:
        yield c
