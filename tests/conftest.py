import pytest
import importlib
from contextlib import contextmanager

from starlette.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session
from typer.testing import CliRunner

from storefleet.db import get_session, init_db
from storefleet.main import app


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture
def session_factory(db_session):
    @contextmanager
    def factory():
        yield db_session

    return factory


@pytest.fixture()
def cli_runner(tmp_path, monkeypatch):
    db_path = tmp_path / "test_cli.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("STOREFLEET_HOSTS_FILE", "")

    import storefleet.db as db

    importlib.reload(db)
    init_db(db.engine)

    import storefleet.cli as cli

    importlib.reload(cli)

    return CliRunner(), cli


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_session] = override_get_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
