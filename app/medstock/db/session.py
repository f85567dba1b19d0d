import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.medstock.core.config import settings
from app.medstock.core.db_timing import add_db_time, get_db_time_ms


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    if get_db_time_ms() is None:
        return
    conn.info["query_start_time"] = time.perf_counter()


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    if get_db_time_ms() is None:
        return
    start = conn.info.pop("query_start_time", None)
    if start is None:
        return
    add_db_time((time.perf_counter() - start) * 1000)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # writers queue on the database lock instead of failing immediately
        connect_args = {"check_same_thread": False, "timeout": 15}
    built = create_engine(database_url, echo=False, future=True, connect_args=connect_args)
    event.listen(built, "before_cursor_execute", _before_cursor_execute)
    event.listen(built, "after_cursor_execute", _after_cursor_execute)
    return built


def build_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_sessionmaker(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker | None = None):
    db = (factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
