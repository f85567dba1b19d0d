import importlib
import os
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient

from tests.db_utils import create_postgres_test_database

ROOT = Path(__file__).resolve().parents[1]


def _setup_app(database_url: str):
    os.environ["DATABASE_URL"] = database_url
    os.environ["SECRET_KEY"] = "test-secret"

    import app.medstock.core.config as config
    import app.medstock.db.session as session
    import app.main as main

    importlib.reload(config)
    importlib.reload(session)
    importlib.reload(main)

    return main.create_app(), session


def _run_migrations(database_url: str):
    os.environ["DATABASE_URL"] = database_url
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "migrations"))
    config.set_main_option("sqlalchemy.url", database_url)
    config.attributes["configure_logger"] = False
    command.upgrade(config, "head")


@pytest.fixture()
def database_url(tmp_path: Path):
    url = os.getenv("TEST_DATABASE_URL", "")
    cleanup = None
    if url.startswith("postgres"):
        url, cleanup = create_postgres_test_database(url)
    else:
        url = f"sqlite+pysqlite:///{tmp_path / 'medstock-test.db'}"
    _run_migrations(url)
    yield url
    if cleanup:
        cleanup()


@pytest.fixture()
def client(database_url: str):
    app, session = _setup_app(database_url)

    with TestClient(app) as test_client:
        yield test_client

    session.engine.dispose()


@pytest.fixture()
def db_session(client):
    from app.medstock.db.session import SessionLocal

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def session_factory(client):
    from app.medstock.db.session import SessionLocal

    return SessionLocal


@pytest.fixture(autouse=True)
def _reset_metrics():
    from app.medstock.core.metrics import metrics

    metrics.reset()
    yield
