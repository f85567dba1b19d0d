"""Batch-level stock counters behind atomic reserve/release/commit operations.

Every counter change is a single conditional UPDATE so that the check and the
decrement cannot be separated by a concurrent writer. The ledger never
commits; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, update

from app.medstock.core.error_catalog import AppError, ErrorCatalog
from app.medstock.core.logging import log_json
from app.medstock.core.metrics import metrics
from app.medstock.db.models import Stock, StockBatch, StockMovement
from app.medstock.repos.stock import BATCH_AVAILABLE, BATCH_DEPLETED, StockRepository
from app.medstock.services.batch_allocator import sort_for_allocation

logger = logging.getLogger(__name__)

MOVEMENT_RESERVE = "RESERVE"
MOVEMENT_RELEASE = "RELEASE"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"


class StockLedger:
    def __init__(self, db, *, clock=datetime.utcnow):
        self.db = db
        self.repo = StockRepository(db)
        self._clock = clock

    def get_available_batches(self, department_id, product_id) -> list[StockBatch]:
        return sort_for_allocation(self.repo.list_batches(department_id, product_id, only_available=True))

    def get_department_batches(self, department_id, product_id) -> list[StockBatch]:
        return sort_for_allocation(self.repo.list_batches(department_id, product_id))

    def reserve_batch_quantity(self, batch_id, quantity: int, *, transfer_item_id=None) -> None:
        _require_positive(quantity)
        now = self._clock()
        result = self._update_batch(
            batch_id,
            and_(StockBatch.status == BATCH_AVAILABLE, StockBatch.available_quantity >= quantity),
            available_quantity=StockBatch.available_quantity - quantity,
            reserved_quantity=StockBatch.reserved_quantity + quantity,
            updated_at=now,
        )
        if result.rowcount != 1:
            owner = self._require_owner(batch_id)
            metrics.increment_insufficient_stock()
            log_json(
                logger,
                {
                    "event": "stock_ledger_rejected",
                    "batch_id": str(batch_id),
                    "requested_quantity": quantity,
                    "available_quantity": owner.available_quantity,
                },
            )
            raise AppError(
                ErrorCatalog.INSUFFICIENT_STOCK,
                details={
                    "batch_id": str(batch_id),
                    "lot_number": owner.lot_number,
                    "requested_quantity": quantity,
                    "available_quantity": owner.available_quantity,
                },
            )
        owner = self._require_owner(batch_id)
        self._mark_depleted(batch_id)
        self._journal(owner, MOVEMENT_RESERVE, quantity, transfer_item_id, now)

    def release_batch_quantity(self, batch_id, quantity: int, *, transfer_item_id=None) -> None:
        _require_positive(quantity)
        now = self._clock()
        result = self._update_batch(
            batch_id,
            StockBatch.reserved_quantity >= quantity,
            available_quantity=StockBatch.available_quantity + quantity,
            reserved_quantity=StockBatch.reserved_quantity - quantity,
            updated_at=now,
        )
        if result.rowcount != 1:
            raise self._conflict(batch_id, "reserved quantity lower than release", quantity)
        owner = self._require_owner(batch_id)
        self._reopen(batch_id)
        self._journal(owner, MOVEMENT_RELEASE, quantity, transfer_item_id, now)

    def commit_reservation(
        self,
        batch_id,
        reserved_qty: int,
        delivered_qty: int,
        *,
        destination_department_id,
        transfer_item_id=None,
    ) -> StockBatch | None:
        """Settle a reservation: ship ``delivered_qty``, return the rest to available.

        The delivered quantity lands in the destination department under the
        same lot number and expiry date. Returns the destination batch, or
        None when nothing was delivered from this batch.
        """
        _require_positive(reserved_qty)
        if delivered_qty < 0 or delivered_qty > reserved_qty:
            raise ValueError("delivered quantity must be between 0 and the reserved quantity")
        shortfall = reserved_qty - delivered_qty
        now = self._clock()
        result = self._update_batch(
            batch_id,
            and_(
                StockBatch.reserved_quantity >= reserved_qty,
                StockBatch.total_quantity >= delivered_qty,
            ),
            reserved_quantity=StockBatch.reserved_quantity - reserved_qty,
            available_quantity=StockBatch.available_quantity + shortfall,
            total_quantity=StockBatch.total_quantity - delivered_qty,
            updated_at=now,
        )
        if result.rowcount != 1:
            raise self._conflict(batch_id, "reserved quantity lower than commit", reserved_qty)
        owner = self._require_owner(batch_id)
        if shortfall:
            self._reopen(batch_id)
            self._journal(owner, MOVEMENT_RELEASE, shortfall, transfer_item_id, now)
        self._mark_depleted(batch_id)
        self._touch_stock(owner.stock_id, now)
        if delivered_qty == 0:
            return None

        self._journal(owner, MOVEMENT_TRANSFER_OUT, delivered_qty, transfer_item_id, now)
        destination = self._receive(owner, destination_department_id, delivered_qty, now)
        self._journal(
            owner,
            MOVEMENT_TRANSFER_IN,
            delivered_qty,
            transfer_item_id,
            now,
            batch_id=destination.id,
            department_id=destination_department_id,
        )
        return destination

    def _receive(self, owner, department_id, quantity: int, now: datetime) -> StockBatch:
        stock = self.repo.get_stock(department_id, owner.product_id)
        if stock is None:
            stock = Stock(
                organization_id=owner.organization_id,
                department_id=department_id,
                product_id=owner.product_id,
                created_at=now,
            )
            self.db.add(stock)
            self.db.flush()
        stock.last_movement_at = now

        batch = self.repo.find_batch_by_lot(stock.id, owner.lot_number, owner.expiry_date)
        if batch is None:
            batch = StockBatch(
                stock_id=stock.id,
                lot_number=owner.lot_number,
                expiry_date=owner.expiry_date,
                manufacture_date=owner.manufacture_date,
                total_quantity=quantity,
                available_quantity=quantity,
                reserved_quantity=0,
                incoming_quantity=0,
                status=BATCH_AVAILABLE,
                created_at=now,
            )
            self.db.add(batch)
            self.db.flush()
            return batch

        self._update_batch(
            batch.id,
            None,
            available_quantity=StockBatch.available_quantity + quantity,
            total_quantity=StockBatch.total_quantity + quantity,
            status=BATCH_AVAILABLE,
            updated_at=now,
        )
        return batch

    def _update_batch(self, batch_id, guard, **values):
        statement = update(StockBatch).where(StockBatch.id == batch_id)
        if guard is not None:
            statement = statement.where(guard)
        return self.db.execute(statement.values(**values).execution_options(synchronize_session=False))

    def _mark_depleted(self, batch_id) -> None:
        self._update_batch(
            batch_id,
            and_(
                StockBatch.status == BATCH_AVAILABLE,
                StockBatch.available_quantity == 0,
                StockBatch.reserved_quantity == 0,
            ),
            status=BATCH_DEPLETED,
        )

    def _reopen(self, batch_id) -> None:
        self._update_batch(
            batch_id,
            and_(StockBatch.status == BATCH_DEPLETED, StockBatch.available_quantity > 0),
            status=BATCH_AVAILABLE,
        )

    def _touch_stock(self, stock_id, now: datetime) -> None:
        self.db.execute(
            update(Stock)
            .where(Stock.id == stock_id)
            .values(last_movement_at=now)
            .execution_options(synchronize_session=False)
        )

    def _require_owner(self, batch_id):
        owner = self.repo.get_batch_owner(batch_id)
        if owner is None:
            raise AppError(ErrorCatalog.NOT_FOUND, details={"resource": "batch", "batch_id": str(batch_id)})
        return owner

    def _conflict(self, batch_id, message: str, quantity: int) -> AppError:
        owner = self._require_owner(batch_id)
        return AppError(
            ErrorCatalog.TRANSACTION_CONFLICT,
            details={
                "message": message,
                "batch_id": str(batch_id),
                "quantity": quantity,
                "reserved_quantity": owner.reserved_quantity,
                "retryable": True,
            },
        )

    def _journal(
        self,
        owner,
        action: str,
        quantity: int,
        transfer_item_id,
        now: datetime,
        *,
        batch_id=None,
        department_id=None,
    ) -> None:
        self.db.add(
            StockMovement(
                organization_id=owner.organization_id,
                department_id=department_id or owner.department_id,
                batch_id=batch_id or owner.id,
                transfer_item_id=transfer_item_id,
                action=action,
                quantity=quantity,
                created_at=now,
            )
        )


def _require_positive(quantity: int) -> None:
    if quantity <= 0:
        raise AppError(
            ErrorCatalog.VALIDATION_ERROR,
            details={"message": "quantity must be greater than zero", "quantity": quantity},
        )
