from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select

from app.medstock.core.context import Actor, build_actor
from app.medstock.core.security import create_actor_token
from app.medstock.db.models import Department, Organization, Product, Stock, StockBatch
from app.medstock.services.batch_allocator import BatchSelection
from app.medstock.services.transfer_workflow import NewTransfer, NewTransferItem, TransferWorkflowService


@dataclass
class Hospital:
    organization: Organization
    pharmacy: Department
    ward: Department
    product: Product

    @property
    def organization_id(self) -> str:
        return str(self.organization.id)


def create_hospital(db_session, *, suffix: str = "a", product_code: str = "PARA-500") -> Hospital:
    organization = Organization(id=uuid.uuid4(), name=f"Hospital {suffix}", slug=f"hospital-{suffix}")
    pharmacy = Department(
        id=uuid.uuid4(),
        organization_id=organization.id,
        name=f"Pharmacy {suffix}",
        slug=f"pharmacy-{suffix}",
    )
    ward = Department(
        id=uuid.uuid4(),
        organization_id=organization.id,
        name=f"Ward {suffix}",
        slug=f"ward-{suffix}",
    )
    product = Product(
        id=uuid.uuid4(),
        organization_id=organization.id,
        code=product_code,
        name="Paracetamol 500mg",
        base_unit="tablet",
    )
    db_session.add(organization)
    db_session.flush()
    db_session.add_all([pharmacy, ward, product])
    db_session.commit()
    return Hospital(organization=organization, pharmacy=pharmacy, ward=ward, product=product)


def add_product(db_session, hospital: Hospital, *, code: str, name: str = "Amoxicillin 250mg") -> Product:
    product = Product(id=uuid.uuid4(), organization_id=hospital.organization.id, code=code, name=name)
    db_session.add(product)
    db_session.commit()
    return product


def add_batch(
    db_session,
    hospital: Hospital,
    *,
    lot: str,
    quantity: int,
    expiry: date | None = None,
    department: Department | None = None,
    product: Product | None = None,
) -> StockBatch:
    department = department or hospital.pharmacy
    product = product or hospital.product
    stock = (
        db_session.execute(
            select(Stock).where(Stock.department_id == department.id, Stock.product_id == product.id)
        )
        .scalars()
        .first()
    )
    if stock is None:
        stock = Stock(
            id=uuid.uuid4(),
            organization_id=hospital.organization.id,
            department_id=department.id,
            product_id=product.id,
        )
        db_session.add(stock)
        db_session.flush()
    batch = StockBatch(
        id=uuid.uuid4(),
        stock_id=stock.id,
        lot_number=lot,
        expiry_date=expiry,
        total_quantity=quantity,
        available_quantity=quantity,
        reserved_quantity=0,
    )
    db_session.add(batch)
    db_session.commit()
    return batch


def batch_counts(db_session, batch_id) -> tuple[int, int, int]:
    """(available, reserved, total) read straight from the database."""
    row = db_session.execute(
        select(StockBatch.available_quantity, StockBatch.reserved_quantity, StockBatch.total_quantity).where(
            StockBatch.id == batch_id
        )
    ).one()
    return row.available_quantity, row.reserved_quantity, row.total_quantity


def department_total(db_session, department_id, product_id) -> int:
    rows = db_session.execute(
        select(StockBatch.available_quantity)
        .join(Stock, StockBatch.stock_id == Stock.id)
        .where(Stock.department_id == department_id, Stock.product_id == product_id)
    ).all()
    return sum(row.available_quantity for row in rows)


def pharmacist(hospital: Hospital, *, user_id: str = "pharmacist-1") -> Actor:
    return build_actor(
        user_id=user_id,
        organization_id=hospital.organization_id,
        role="MEMBER",
        name="Pharmacist",
        department_ids=[str(hospital.pharmacy.id)],
    )


def nurse(hospital: Hospital, *, user_id: str = "nurse-1") -> Actor:
    return build_actor(
        user_id=user_id,
        organization_id=hospital.organization_id,
        role="MEMBER",
        name="Ward nurse",
        department_ids=[str(hospital.ward.id)],
    )


def admin(hospital: Hospital, *, user_id: str = "admin-1", role: str = "ADMIN") -> Actor:
    return build_actor(user_id=user_id, organization_id=hospital.organization_id, role=role, name="Admin")


def auth_headers(actor: Actor) -> dict[str, str]:
    token = create_actor_token(
        user_id=actor.user_id,
        organization_id=actor.organization_id,
        role=actor.role.value,
        department_ids=sorted(actor.department_ids),
        name=actor.name,
    )
    return {"Authorization": f"Bearer {token}"}


def request_transfer(db_session, hospital: Hospital, *, quantity: int = 100, items=None, priority: str = "NORMAL"):
    """Ward asks the pharmacy for stock; returns the created transfer."""
    service = TransferWorkflowService(db_session)
    return service.create_transfer(
        nurse(hospital),
        NewTransfer(
            requesting_department_id=str(hospital.ward.id),
            supplying_department_id=str(hospital.pharmacy.id),
            title="Ward restock",
            request_reason="Weekly top-up",
            priority=priority,
            items=items or [NewTransferItem(product_id=str(hospital.product.id), requested_quantity=quantity)],
        ),
    )


def first_item_id(db_session, transfer) -> str:
    from app.medstock.repos.transfers import TransferRepository

    return str(TransferRepository(db_session).get_items(transfer.id)[0].id)


def select_batches(*pairs) -> list[BatchSelection]:
    return [BatchSelection(batch_id=str(batch.id), quantity=quantity) for batch, quantity in pairs]
