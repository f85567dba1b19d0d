from __future__ import annotations

from datetime import date

from sqlalchemy import select

from app.medstock.db.models import Stock, StockBatch

BATCH_AVAILABLE = "AVAILABLE"
BATCH_DEPLETED = "DEPLETED"


class StockRepository:
    def __init__(self, db):
        self.db = db

    def get_stock(self, department_id, product_id) -> Stock | None:
        return (
            self.db.execute(
                select(Stock).where(Stock.department_id == department_id, Stock.product_id == product_id)
            )
            .scalars()
            .first()
        )

    def list_batches(self, department_id, product_id, *, only_available: bool = False) -> list[StockBatch]:
        query = (
            select(StockBatch)
            .join(Stock, StockBatch.stock_id == Stock.id)
            .where(
                Stock.department_id == department_id,
                Stock.product_id == product_id,
                StockBatch.is_active.is_(True),
            )
        )
        if only_available:
            query = query.where(
                StockBatch.status == BATCH_AVAILABLE,
                StockBatch.available_quantity > 0,
            )
        query = query.order_by(StockBatch.created_at, StockBatch.lot_number)
        return self.db.execute(query.execution_options(populate_existing=True)).scalars().all()

    def get_batch_owner(self, batch_id):
        """Column snapshot of a batch and its owning stock, read past the identity map."""
        return self.db.execute(
            select(
                StockBatch.id,
                StockBatch.stock_id,
                StockBatch.lot_number,
                StockBatch.expiry_date,
                StockBatch.manufacture_date,
                StockBatch.available_quantity,
                StockBatch.reserved_quantity,
                StockBatch.total_quantity,
                Stock.organization_id,
                Stock.department_id,
                Stock.product_id,
            )
            .join(Stock, StockBatch.stock_id == Stock.id)
            .where(StockBatch.id == batch_id)
        ).first()

    def find_batch_by_lot(self, stock_id, lot_number: str, expiry_date: date | None) -> StockBatch | None:
        query = select(StockBatch).where(
            StockBatch.stock_id == stock_id,
            StockBatch.lot_number == lot_number,
            StockBatch.is_active.is_(True),
        )
        if expiry_date is None:
            query = query.where(StockBatch.expiry_date.is_(None))
        else:
            query = query.where(StockBatch.expiry_date == expiry_date)
        return self.db.execute(query).scalars().first()
