from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

from sqlalchemy import func, select

from app.medstock.core.metrics import metrics
from app.medstock.db.models import (
    Organization,
    Stock,
    StockBatch,
    Transfer,
    TransferItem,
    TransferItemBatch,
)
from app.medstock.services.transfer_state import ItemStatus, TransferStatus, derive_transfer_status


SEVERITY_CRITICAL = "CRITICAL"
SEVERITY_WARN = "WARN"

_REQUIRED_TIMESTAMPS = {
    TransferStatus.APPROVED.value: ("approved_at",),
    TransferStatus.PREPARED.value: ("approved_at", "prepared_at"),
    TransferStatus.COMPLETED.value: ("approved_at", "prepared_at", "delivered_at"),
    TransferStatus.CANCELLED.value: ("cancelled_at",),
}


@dataclass(frozen=True)
class IntegrityFinding:
    check_id: str
    severity: str
    organization_id: str
    message: str
    entity: str
    entity_id: str | None
    details: dict


def resolve_organizations(db, organization: str) -> list[str]:
    if organization.lower() != "all":
        return [organization]
    return [str(row.id) for row in db.execute(select(Organization.id)).all()]


def _record(check_id: str, findings: list[IntegrityFinding]) -> list[IntegrityFinding]:
    if findings:
        metrics.increment_invariant_violation(check_id, len(findings))
    return findings


def _items_query(organization_id: str):
    return (
        select(TransferItem)
        .join(Transfer, TransferItem.transfer_id == Transfer.id)
        .where(Transfer.organization_id == organization_id)
    )


def check_quantity_chain(db, organization_id: str) -> list[IntegrityFinding]:
    findings = []
    for item in db.execute(_items_query(organization_id)).scalars().all():
        chain = [
            item.requested_quantity,
            item.approved_quantity,
            item.prepared_quantity,
            item.received_quantity,
        ]
        present = [value for value in chain if value is not None]
        if any(later > earlier for earlier, later in zip(present, present[1:])):
            findings.append(
                IntegrityFinding(
                    check_id="quantity_chain",
                    severity=SEVERITY_CRITICAL,
                    organization_id=organization_id,
                    message="Item quantities are not monotonically non-increasing.",
                    entity="transfer_items",
                    entity_id=str(item.id),
                    details={
                        "requested_quantity": item.requested_quantity,
                        "approved_quantity": item.approved_quantity,
                        "prepared_quantity": item.prepared_quantity,
                        "received_quantity": item.received_quantity,
                    },
                )
            )
    return _record("quantity_chain", findings)


def check_allocation_totals(db, organization_id: str) -> list[IntegrityFinding]:
    allocated = dict(
        db.execute(
            select(TransferItemBatch.transfer_item_id, func.sum(TransferItemBatch.quantity))
            .join(TransferItem, TransferItemBatch.transfer_item_id == TransferItem.id)
            .join(Transfer, TransferItem.transfer_id == Transfer.id)
            .where(Transfer.organization_id == organization_id)
            .group_by(TransferItemBatch.transfer_item_id)
        ).all()
    )
    findings = []
    for item in db.execute(_items_query(organization_id)).scalars().all():
        if item.prepared_quantity is None:
            continue
        total = allocated.get(item.id, 0)
        if total != item.prepared_quantity:
            findings.append(
                IntegrityFinding(
                    check_id="allocation_total",
                    severity=SEVERITY_CRITICAL,
                    organization_id=organization_id,
                    message="Batch allocations do not add up to the prepared quantity.",
                    entity="transfer_items",
                    entity_id=str(item.id),
                    details={"prepared_quantity": item.prepared_quantity, "allocated_quantity": total},
                )
            )
    return _record("allocation_total", findings)


def check_batch_counters(db, organization_id: str) -> list[IntegrityFinding]:
    rows = db.execute(
        select(
            StockBatch.id,
            StockBatch.lot_number,
            StockBatch.total_quantity,
            StockBatch.available_quantity,
            StockBatch.reserved_quantity,
        )
        .join(Stock, StockBatch.stock_id == Stock.id)
        .where(Stock.organization_id == organization_id)
    ).all()
    findings = []
    for row in rows:
        negative = min(row.total_quantity, row.available_quantity, row.reserved_quantity) < 0
        if negative or row.available_quantity + row.reserved_quantity > row.total_quantity:
            findings.append(
                IntegrityFinding(
                    check_id="batch_counters",
                    severity=SEVERITY_CRITICAL,
                    organization_id=organization_id,
                    message="Batch counters are negative or exceed the batch total.",
                    entity="stock_batches",
                    entity_id=str(row.id),
                    details={
                        "lot_number": row.lot_number,
                        "total_quantity": row.total_quantity,
                        "available_quantity": row.available_quantity,
                        "reserved_quantity": row.reserved_quantity,
                    },
                )
            )
    return _record("batch_counters", findings)


def check_batch_reservations(db, organization_id: str) -> list[IntegrityFinding]:
    outstanding = dict(
        db.execute(
            select(TransferItemBatch.batch_id, func.sum(TransferItemBatch.quantity))
            .join(TransferItem, TransferItemBatch.transfer_item_id == TransferItem.id)
            .join(Transfer, TransferItem.transfer_id == Transfer.id)
            .where(Transfer.organization_id == organization_id)
            .where(TransferItem.status == ItemStatus.PREPARED.value)
            .group_by(TransferItemBatch.batch_id)
        ).all()
    )
    rows = db.execute(
        select(StockBatch.id, StockBatch.lot_number, StockBatch.reserved_quantity)
        .join(Stock, StockBatch.stock_id == Stock.id)
        .where(Stock.organization_id == organization_id)
    ).all()
    findings = []
    for row in rows:
        expected = outstanding.get(row.id, 0)
        if row.reserved_quantity != expected:
            findings.append(
                IntegrityFinding(
                    check_id="batch_reservations",
                    severity=SEVERITY_WARN,
                    organization_id=organization_id,
                    message="Reserved quantity differs from allocations of prepared items.",
                    entity="stock_batches",
                    entity_id=str(row.id),
                    details={
                        "lot_number": row.lot_number,
                        "reserved_quantity": row.reserved_quantity,
                        "allocated_quantity": expected,
                    },
                )
            )
    return _record("batch_reservations", findings)


def check_transfer_status(db, organization_id: str) -> list[IntegrityFinding]:
    statuses: dict = defaultdict(list)
    for transfer_id, status in db.execute(
        select(TransferItem.transfer_id, TransferItem.status)
        .join(Transfer, TransferItem.transfer_id == Transfer.id)
        .where(Transfer.organization_id == organization_id)
    ).all():
        statuses[transfer_id].append(status)
    transfers = db.execute(
        select(Transfer.id, Transfer.code, Transfer.status).where(Transfer.organization_id == organization_id)
    ).all()
    findings = []
    for row in transfers:
        item_statuses = statuses.get(row.id)
        if not item_statuses:
            findings.append(
                IntegrityFinding(
                    check_id="transfer_status",
                    severity=SEVERITY_CRITICAL,
                    organization_id=organization_id,
                    message="Transfer has no items.",
                    entity="transfers",
                    entity_id=str(row.id),
                    details={"code": row.code},
                )
            )
            continue
        derived = derive_transfer_status(item_statuses)
        if derived.value != row.status:
            findings.append(
                IntegrityFinding(
                    check_id="transfer_status",
                    severity=SEVERITY_CRITICAL,
                    organization_id=organization_id,
                    message="Stored transfer status differs from the status derived from its items.",
                    entity="transfers",
                    entity_id=str(row.id),
                    details={"code": row.code, "stored_status": row.status, "derived_status": derived.value},
                )
            )
    return _record("transfer_status", findings)


def check_transfer_timestamps(db, organization_id: str) -> list[IntegrityFinding]:
    transfers = db.execute(select(Transfer).where(Transfer.organization_id == organization_id)).scalars().all()
    findings = []
    for transfer in transfers:
        missing = [name for name in _REQUIRED_TIMESTAMPS.get(transfer.status, ()) if getattr(transfer, name) is None]
        if missing:
            findings.append(
                IntegrityFinding(
                    check_id="transfer_timestamps",
                    severity=SEVERITY_WARN,
                    organization_id=organization_id,
                    message="Transfer status is missing its lifecycle timestamps.",
                    entity="transfers",
                    entity_id=str(transfer.id),
                    details={"code": transfer.code, "status": transfer.status, "missing": missing},
                )
            )
    return _record("transfer_timestamps", findings)


def run_integrity_checks(db, organization_id: str) -> list[IntegrityFinding]:
    findings: list[IntegrityFinding] = []
    findings.extend(check_quantity_chain(db, organization_id))
    findings.extend(check_allocation_totals(db, organization_id))
    findings.extend(check_batch_counters(db, organization_id))
    findings.extend(check_batch_reservations(db, organization_id))
    findings.extend(check_transfer_status(db, organization_id))
    findings.extend(check_transfer_timestamps(db, organization_id))
    return findings
