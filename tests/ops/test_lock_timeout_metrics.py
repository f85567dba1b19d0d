from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError, OperationalError

from app.medstock.core.errors import setup_exception_handlers
from app.medstock.core.metrics import metrics


def _app() -> FastAPI:
    app = FastAPI()
    setup_exception_handlers(app)

    @app.get("/locked")
    def locked():
        raise OperationalError("UPDATE stock_batches", {}, Exception("database is locked"))

    @app.get("/conflict")
    def conflict():
        raise IntegrityError("INSERT INTO transfers", {}, Exception("UNIQUE constraint failed"))

    @app.get("/down")
    def down():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    return app


def test_lock_timeout_is_retryable_and_counted():
    metrics.reset()
    with TestClient(_app(), raise_server_exceptions=False) as client:
        response = client.get("/locked")

    assert response.status_code == 409
    assert response.json()["code"] == "LOCK_TIMEOUT"
    assert response.json()["details"]["retryable"] is True
    content = metrics.render().content.decode("utf-8")
    if metrics.enabled:
        assert "lock_wait_timeout_total 1.0" in content
    else:
        assert "metrics_disabled" in content


def test_other_database_failures_map_to_retryable_codes():
    with TestClient(_app(), raise_server_exceptions=False) as client:
        conflict = client.get("/conflict")
        down = client.get("/down")

    assert conflict.status_code == 409
    assert conflict.json()["code"] == "TRANSACTION_CONFLICT"
    assert down.status_code == 503
    assert down.json()["code"] == "DB_UNAVAILABLE"
    assert down.json()["details"] == {"type": "OperationalError", "retryable": True}
