from sqlalchemy import inspect, select

from app.medstock.db.models import Department, StockBatch
from app.medstock.db.seed import run_seed


def test_migrations_create_schema(db_session):
    tables = set(inspect(db_session.get_bind()).get_table_names())

    assert {
        "organizations",
        "departments",
        "products",
        "stocks",
        "stock_batches",
        "stock_movements",
        "transfers",
        "transfer_items",
        "transfer_item_batches",
        "transfer_history",
        "audit_events",
    } <= tables


def test_seed_is_idempotent(db_session):
    first = run_seed(db_session)
    second = run_seed(db_session)

    assert first == second
    departments = db_session.execute(
        select(Department.slug).where(Department.organization_id == first["organization_id"])
    ).scalars().all()
    assert sorted(departments) == ["central-pharmacy", "ward-3b"]
    assert len(db_session.execute(select(StockBatch)).scalars().all()) == 6
