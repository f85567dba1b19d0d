from datetime import date

import pytest
from sqlalchemy import select

from app.medstock.core.error_catalog import AppError
from app.medstock.db.models import StockBatch, StockMovement
from app.medstock.services.stock_ledger import StockLedger
from tests.medstock_helpers import add_batch, batch_counts, create_hospital, department_total


def test_available_batches_are_sorted_and_skip_empty(db_session):
    hospital = create_hospital(db_session)
    late = add_batch(db_session, hospital, lot="LATE", quantity=10, expiry=date(2027, 9, 1))
    undated = add_batch(db_session, hospital, lot="UNDATED", quantity=10)
    early = add_batch(db_session, hospital, lot="EARLY", quantity=10, expiry=date(2026, 12, 1))
    add_batch(db_session, hospital, lot="EMPTY", quantity=0, expiry=date(2026, 11, 1))

    batches = StockLedger(db_session).get_available_batches(hospital.pharmacy.id, hospital.product.id)

    assert [batch.id for batch in batches] == [early.id, late.id, undated.id]


def test_reserve_and_release_round_trip(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=100)
    ledger = StockLedger(db_session)

    ledger.reserve_batch_quantity(batch.id, 60)
    db_session.commit()
    assert batch_counts(db_session, batch.id) == (40, 60, 100)

    ledger.release_batch_quantity(batch.id, 60)
    db_session.commit()
    assert batch_counts(db_session, batch.id) == (100, 0, 100)

    actions = db_session.execute(
        select(StockMovement.action).where(StockMovement.batch_id == batch.id).order_by(StockMovement.created_at)
    ).scalars().all()
    assert sorted(actions) == ["RELEASE", "RESERVE"]


def test_reserve_rejects_more_than_available(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=10)

    with pytest.raises(AppError) as excinfo:
        StockLedger(db_session).reserve_batch_quantity(batch.id, 11)
    db_session.rollback()

    assert excinfo.value.code == "INSUFFICIENT_STOCK"
    assert excinfo.value.details["available_quantity"] == 10
    assert batch_counts(db_session, batch.id) == (10, 0, 10)


def test_reserve_unknown_batch_is_not_found(db_session):
    hospital = create_hospital(db_session)
    add_batch(db_session, hospital, lot="L1", quantity=10)

    with pytest.raises(AppError) as excinfo:
        StockLedger(db_session).reserve_batch_quantity("00000000-0000-0000-0000-000000000000", 1)

    assert excinfo.value.code == "NOT_FOUND"


def test_reserving_last_units_marks_batch_depleted(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=5)
    ledger = StockLedger(db_session)

    ledger.reserve_batch_quantity(batch.id, 5)
    db_session.commit()
    assert db_session.get(StockBatch, batch.id, populate_existing=True).status == "AVAILABLE"

    ledger.commit_reservation(batch.id, 5, 5, destination_department_id=hospital.ward.id)
    db_session.commit()
    assert db_session.get(StockBatch, batch.id, populate_existing=True).status == "DEPLETED"


def test_commit_moves_delivered_and_returns_shortfall(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=100, expiry=date(2027, 1, 31))
    ledger = StockLedger(db_session)
    ledger.reserve_batch_quantity(batch.id, 80)

    destination = ledger.commit_reservation(batch.id, 80, 75, destination_department_id=hospital.ward.id)
    db_session.commit()

    assert batch_counts(db_session, batch.id) == (25, 0, 25)
    assert department_total(db_session, hospital.ward.id, hospital.product.id) == 75
    received = db_session.get(StockBatch, destination.id, populate_existing=True)
    assert received.lot_number == "L1"
    assert received.expiry_date == date(2027, 1, 31)


def test_commit_merges_into_existing_destination_lot(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=50)
    existing = add_batch(db_session, hospital, lot="L1", quantity=5, department=hospital.ward)
    ledger = StockLedger(db_session)
    ledger.reserve_batch_quantity(batch.id, 20)

    destination = ledger.commit_reservation(batch.id, 20, 20, destination_department_id=hospital.ward.id)
    db_session.commit()

    assert destination.id == existing.id
    assert batch_counts(db_session, existing.id) == (25, 0, 25)


def test_release_more_than_reserved_is_conflict(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=10)

    with pytest.raises(AppError) as excinfo:
        StockLedger(db_session).release_batch_quantity(batch.id, 1)

    assert excinfo.value.code == "TRANSACTION_CONFLICT"
    assert excinfo.value.details["retryable"] is True


def test_non_positive_quantity_is_validation_error(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=10)

    with pytest.raises(AppError) as excinfo:
        StockLedger(db_session).reserve_batch_quantity(batch.id, 0)

    assert excinfo.value.code == "VALIDATION_ERROR"


def test_stale_read_cannot_over_reserve(session_factory, db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=100)

    first = session_factory()
    second = session_factory()
    try:
        seen = StockLedger(first).get_available_batches(hospital.pharmacy.id, hospital.product.id)
        assert seen[0].available_quantity == 100

        StockLedger(second).reserve_batch_quantity(batch.id, 60)
        second.commit()

        with pytest.raises(AppError) as excinfo:
            StockLedger(first).reserve_batch_quantity(batch.id, 60)
        first.rollback()
    finally:
        first.close()
        second.close()

    assert excinfo.value.code == "INSUFFICIENT_STOCK"
    assert batch_counts(db_session, batch.id) == (40, 60, 100)
