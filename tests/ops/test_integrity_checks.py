import uuid
from datetime import datetime

from app.medstock.db.models import Transfer, TransferItem
from app.medstock.services.transfer_workflow import TransferWorkflowService
from app.ops.integrity_checks import (
    check_allocation_totals,
    check_batch_counters,
    check_batch_reservations,
    check_quantity_chain,
    check_transfer_status,
    check_transfer_timestamps,
    run_integrity_checks,
)
from tests.medstock_helpers import (
    add_batch,
    create_hospital,
    first_item_id,
    pharmacist,
    request_transfer,
    select_batches,
)


def _raw_transfer(db_session, hospital, *, status="PENDING", item_status="PENDING", **item_values):
    transfer = Transfer(
        id=uuid.uuid4(),
        organization_id=hospital.organization.id,
        code=f"REQ-TEST-{uuid.uuid4().hex[:6]}",
        title="Raw",
        status=status,
        requesting_department_id=hospital.ward.id,
        supplying_department_id=hospital.pharmacy.id,
        requested_by_id="seed",
    )
    db_session.add(transfer)
    db_session.flush()
    db_session.add(
        TransferItem(
            id=uuid.uuid4(),
            transfer_id=transfer.id,
            product_id=hospital.product.id,
            requested_quantity=item_values.pop("requested_quantity", 10),
            status=item_status,
            **item_values,
        )
    )
    db_session.commit()
    return transfer


def test_workflow_output_is_clean(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=50)
    transfer = request_transfer(db_session, hospital, quantity=30)
    item_id = first_item_id(db_session, transfer)
    service = TransferWorkflowService(db_session)
    service.approve_item(pharmacist(hospital), transfer.id, item_id, 30)
    service.prepare_item(pharmacist(hospital), transfer.id, item_id, select_batches((batch, 25)))

    assert run_integrity_checks(db_session, hospital.organization_id) == []


def test_quantity_chain_violation(db_session):
    hospital = create_hospital(db_session)
    _raw_transfer(db_session, hospital, item_status="APPROVED", requested_quantity=10, approved_quantity=12)

    findings = check_quantity_chain(db_session, hospital.organization_id)

    assert [finding.check_id for finding in findings] == ["quantity_chain"]
    assert findings[0].severity == "CRITICAL"


def test_allocation_total_violation(db_session):
    hospital = create_hospital(db_session)
    _raw_transfer(
        db_session,
        hospital,
        status="PREPARED",
        item_status="PREPARED",
        approved_quantity=10,
        prepared_quantity=10,
    )

    findings = check_allocation_totals(db_session, hospital.organization_id)

    assert findings[0].details == {"prepared_quantity": 10, "allocated_quantity": 0}


def test_batch_counter_violations(db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=10)
    batch.reserved_quantity = 5
    db_session.commit()

    counters = check_batch_counters(db_session, hospital.organization_id)
    reservations = check_batch_reservations(db_session, hospital.organization_id)

    assert [finding.entity_id for finding in counters] == [str(batch.id)]
    assert reservations[0].details["reserved_quantity"] == 5
    assert reservations[0].details["allocated_quantity"] == 0


def test_denormalized_status_mismatch(db_session):
    hospital = create_hospital(db_session)
    _raw_transfer(db_session, hospital, status="COMPLETED", item_status="PENDING")

    findings = check_transfer_status(db_session, hospital.organization_id)

    assert findings[0].details["derived_status"] == "PENDING"


def test_missing_lifecycle_timestamps(db_session):
    hospital = create_hospital(db_session)
    _raw_transfer(db_session, hospital, status="CANCELLED", item_status="CANCELLED")
    stamped = _raw_transfer(db_session, hospital, status="CANCELLED", item_status="CANCELLED")
    stamped.cancelled_at = datetime.utcnow()
    db_session.commit()

    findings = check_transfer_timestamps(db_session, hospital.organization_id)

    assert len(findings) == 1
    assert findings[0].details["missing"] == ["cancelled_at"]
    assert findings[0].severity == "WARN"
