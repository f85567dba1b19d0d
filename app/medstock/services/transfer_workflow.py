"""Transfer lifecycle: create, approve, prepare, deliver and cancel.

Each public operation runs in one database transaction. The transfer row is
read ``FOR UPDATE``, item transitions are compare-and-set updates on the
item's current status, and any error rolls the whole operation back.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import update

from app.medstock.core.config import settings
from app.medstock.core.context import Actor
from app.medstock.core.error_catalog import AppError, ErrorCatalog
from app.medstock.core.logging import log_json
from app.medstock.core.metrics import metrics
from app.medstock.db.models import Transfer, TransferItem, TransferItemBatch
from app.medstock.repos.catalog import CatalogRepository
from app.medstock.repos.transfers import TransferRepository
from app.medstock.services.audit import AuditEventPayload, AuditService
from app.medstock.services.batch_allocator import (
    STOCK_VIOLATIONS,
    BatchSelection,
    distribute_quantity,
    sort_for_allocation,
    validate_allocation,
)
from app.medstock.services.history import HistoryRecord, TransferHistoryRecorder
from app.medstock.services.permissions import TransferOperation, TransferScope, require_permission
from app.medstock.services.stock_ledger import StockLedger
from app.medstock.services.transfer_state import (
    TRANSFER_TIMESTAMP_FIELDS,
    HistoryAction,
    ItemStatus,
    TransferPriority,
    TransferStatus,
    can_transition,
    derive_transfer_status,
    is_live,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewTransferItem:
    product_id: str
    requested_quantity: int
    notes: str | None = None


@dataclass(frozen=True)
class NewTransfer:
    requesting_department_id: str
    supplying_department_id: str
    title: str
    items: list[NewTransferItem] = field(default_factory=list)
    request_reason: str | None = None
    priority: str = TransferPriority.NORMAL.value
    notes: str | None = None


def _validation_error(message: str, **details) -> AppError:
    return AppError(ErrorCatalog.VALIDATION_ERROR, details={"message": message, **details})


def _not_found(resource: str, identifier) -> AppError:
    return AppError(ErrorCatalog.NOT_FOUND, details={"resource": resource, "id": str(identifier)})


def _parse_id(value, resource: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise _not_found(resource, value) from exc


def _is_quantity(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


class TransferWorkflowService:
    def __init__(self, db, *, trace_id: str | None = None, clock=datetime.utcnow):
        self.db = db
        self.trace_id = trace_id
        self.repo = TransferRepository(db)
        self.catalog = CatalogRepository(db)
        self.ledger = StockLedger(db, clock=clock)
        self.history = TransferHistoryRecorder(db)
        self._clock = clock

    @contextmanager
    def _unit_of_work(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def create_transfer(self, actor: Actor, request: NewTransfer) -> Transfer:
        requesting_id = _parse_id(request.requesting_department_id, "department")
        supplying_id = _parse_id(request.supplying_department_id, "department")
        require_permission(
            actor,
            TransferOperation.CREATE,
            TransferScope(requesting_department_id=str(requesting_id), supplying_department_id=str(supplying_id)),
        )
        if requesting_id == supplying_id:
            raise _validation_error("requesting and supplying departments must differ")
        if not request.items:
            raise _validation_error("at least one item is required")
        if _blank(request.title):
            raise _validation_error("title is required")
        if request.priority not in {priority.value for priority in TransferPriority}:
            raise _validation_error("unknown priority", priority=request.priority)
        for index, item in enumerate(request.items):
            if not _is_quantity(item.requested_quantity) or item.requested_quantity <= 0:
                raise _validation_error(
                    "requested quantity must be greater than zero",
                    index=index,
                    requested_quantity=item.requested_quantity,
                )
        product_ids = [_parse_id(item.product_id, "product") for item in request.items]

        now = self._clock()
        with self._unit_of_work():
            for department_id in (requesting_id, supplying_id):
                department = self.catalog.get_department(department_id, actor.organization_id)
                if department is None or not department.is_active:
                    raise _not_found("department", department_id)
            products = {
                product.id: product
                for product in self.catalog.get_products(set(product_ids), actor.organization_id)
                if product.is_active
            }
            for product_id in product_ids:
                if product_id not in products:
                    raise _not_found("product", product_id)

            transfer = Transfer(
                organization_id=actor.organization_id,
                code=self._next_code(actor.organization_id, now),
                title=request.title.strip(),
                request_reason=request.request_reason,
                priority=request.priority,
                notes=request.notes,
                status=TransferStatus.PENDING.value,
                requesting_department_id=requesting_id,
                supplying_department_id=supplying_id,
                requested_by_id=actor.user_id,
                requested_at=now,
                created_at=now,
            )
            self.db.add(transfer)
            self.db.flush()
            self.db.add_all(
                [
                    TransferItem(
                        transfer_id=transfer.id,
                        product_id=product_id,
                        position=position,
                        requested_quantity=item.requested_quantity,
                        notes=item.notes,
                        status=ItemStatus.PENDING.value,
                        created_at=now,
                    )
                    for position, (product_id, item) in enumerate(zip(product_ids, request.items))
                ]
            )
            self.history.append(
                HistoryRecord(
                    transfer_id=transfer.id,
                    action=HistoryAction.CREATED,
                    from_status=None,
                    to_status=TransferStatus.PENDING,
                    actor=actor,
                    notes="Transfer request created",
                    details={"code": transfer.code, "item_count": len(request.items)},
                ),
                recorded_at=now,
            )
            code = transfer.code

        self._after_commit(
            actor,
            "transfers.create",
            transfer,
            item=None,
            before=None,
            after={"status": TransferStatus.PENDING.value, "code": code},
        )
        return transfer

    def approve_item(
        self,
        actor: Actor,
        transfer_id,
        item_id,
        approved_quantity: int,
        notes: str | None = None,
    ) -> TransferItem:
        now = self._clock()
        with self._unit_of_work():
            transfer = self._load_transfer(actor, transfer_id)
            item = self._load_item(transfer, item_id)
            require_permission(actor, TransferOperation.APPROVE_ITEM, TransferScope.from_transfer(transfer))
            self._approve(actor, transfer, item, approved_quantity, notes, now)
            self._refresh_transfer_status(transfer, now)

        self._after_commit(
            actor,
            "transfers.approve",
            transfer,
            item=item,
            before={"status": ItemStatus.PENDING.value},
            after={"status": ItemStatus.APPROVED.value, "approved_quantity": approved_quantity},
        )
        return item

    def approve_all_items(self, actor: Actor, transfer_id, notes: str | None = None) -> Transfer:
        now = self._clock()
        with self._unit_of_work():
            transfer = self._load_transfer(actor, transfer_id)
            require_permission(actor, TransferOperation.APPROVE_ALL_ITEMS, TransferScope.from_transfer(transfer))
            pending = [
                item
                for item in self.repo.get_items(transfer.id)
                if item.status == ItemStatus.PENDING.value
            ]
            if not pending:
                raise AppError(
                    ErrorCatalog.INVALID_TRANSITION,
                    details={"message": "transfer has no pending items", "transfer_id": str(transfer.id)},
                )
            for item in pending:
                self._approve(actor, transfer, item, item.requested_quantity, notes, now)
            self._refresh_transfer_status(transfer, now)
            approved_ids = [str(item.id) for item in pending]

        self._after_commit(
            actor,
            "transfers.approve_all",
            transfer,
            item=None,
            before=None,
            after={"approved_item_ids": approved_ids},
            transitions=len(approved_ids),
        )
        return transfer

    def prepare_item(
        self,
        actor: Actor,
        transfer_id,
        item_id,
        selections: list[BatchSelection],
        notes: str | None = None,
    ) -> TransferItem:
        now = self._clock()
        with self._unit_of_work():
            transfer = self._load_transfer(actor, transfer_id)
            item = self._load_item(transfer, item_id)
            require_permission(actor, TransferOperation.PREPARE_ITEM, TransferScope.from_transfer(transfer))
            self._require_status(item, ItemStatus.PREPARED)

            if not selections:
                raise _validation_error("at least one batch selection is required")
            for selection in selections:
                if not _is_quantity(selection.quantity):
                    raise _validation_error("quantity must be an integer", batch_id=str(selection.batch_id))
            prepared_quantity = sum(selection.quantity for selection in selections)
            if prepared_quantity <= 0:
                raise _validation_error("selected quantity must be greater than zero")
            if prepared_quantity > item.approved_quantity:
                raise _validation_error(
                    "selected quantity exceeds the approved quantity",
                    selected_quantity=prepared_quantity,
                    approved_quantity=item.approved_quantity,
                )

            batches = self.ledger.get_department_batches(transfer.supplying_department_id, item.product_id)
            violations = validate_allocation(batches, selections, item.approved_quantity)
            shape_violations = [violation for violation in violations if violation.code not in STOCK_VIOLATIONS]
            if shape_violations:
                raise _validation_error(
                    "invalid batch selection",
                    violations=[violation.as_dict() for violation in shape_violations],
                )
            if violations:
                metrics.increment_insufficient_stock()
                raise AppError(
                    ErrorCatalog.INSUFFICIENT_STOCK,
                    details={"violations": [violation.as_dict() for violation in violations]},
                )

            self._transition(
                item,
                ItemStatus.APPROVED,
                ItemStatus.PREPARED,
                now,
                prepared_quantity=prepared_quantity,
                prepared_at=now,
                prepared_by_id=actor.user_id,
            )

            quantities = {str(selection.batch_id): selection.quantity for selection in selections}
            allocated = []
            for position, batch in enumerate(sort_for_allocation(b for b in batches if str(b.id) in quantities)):
                quantity = quantities[str(batch.id)]
                self.ledger.reserve_batch_quantity(batch.id, quantity, transfer_item_id=item.id)
                self.db.add(
                    TransferItemBatch(
                        transfer_item_id=item.id,
                        batch_id=batch.id,
                        position=position,
                        quantity=quantity,
                        lot_number=batch.lot_number,
                        expiry_date=batch.expiry_date,
                        created_at=now,
                    )
                )
                allocated.append(
                    {
                        "batch_id": str(batch.id),
                        "lot_number": batch.lot_number,
                        "expiry_date": batch.expiry_date.isoformat() if batch.expiry_date else None,
                        "quantity": quantity,
                    }
                )

            self._stamp_once(transfer, ItemStatus.PREPARED, now)
            self.history.append(
                HistoryRecord(
                    transfer_id=transfer.id,
                    item_id=item.id,
                    action=HistoryAction.PREPARED,
                    from_status=ItemStatus.APPROVED,
                    to_status=ItemStatus.PREPARED,
                    actor=actor,
                    notes=notes,
                    details={"prepared_quantity": prepared_quantity, "batches": allocated},
                ),
                recorded_at=now,
            )
            self._refresh_transfer_status(transfer, now)

        self._after_commit(
            actor,
            "transfers.prepare",
            transfer,
            item=item,
            before={"status": ItemStatus.APPROVED.value},
            after={"status": ItemStatus.PREPARED.value, "prepared_quantity": prepared_quantity, "batches": allocated},
        )
        return item

    def deliver_item(
        self,
        actor: Actor,
        transfer_id,
        item_id,
        received_quantity: int,
        notes: str | None = None,
    ) -> TransferItem:
        now = self._clock()
        with self._unit_of_work():
            transfer = self._load_transfer(actor, transfer_id)
            item = self._load_item(transfer, item_id)
            require_permission(actor, TransferOperation.DELIVER_ITEM, TransferScope.from_transfer(transfer))
            self._require_status(item, ItemStatus.DELIVERED)
            if not _is_quantity(received_quantity) or received_quantity <= 0:
                raise _validation_error(
                    "received quantity must be greater than zero",
                    received_quantity=received_quantity,
                )
            if received_quantity > item.prepared_quantity:
                raise _validation_error(
                    "received quantity exceeds the prepared quantity",
                    received_quantity=received_quantity,
                    prepared_quantity=item.prepared_quantity,
                )

            self._transition(
                item,
                ItemStatus.PREPARED,
                ItemStatus.DELIVERED,
                now,
                received_quantity=received_quantity,
                delivered_at=now,
                delivered_by_id=actor.user_id,
            )

            allocations = sort_for_allocation(self.repo.get_allocations([item.id]))
            settled = []
            for allocation, delivered in distribute_quantity(allocations, received_quantity):
                self.ledger.commit_reservation(
                    allocation.batch_id,
                    allocation.quantity,
                    delivered,
                    destination_department_id=transfer.requesting_department_id,
                    transfer_item_id=item.id,
                )
                settled.append(
                    {
                        "batch_id": str(allocation.batch_id),
                        "lot_number": allocation.lot_number,
                        "reserved_quantity": allocation.quantity,
                        "delivered_quantity": delivered,
                        "returned_quantity": allocation.quantity - delivered,
                    }
                )

            shortfall = item.prepared_quantity - received_quantity
            self._stamp_once(transfer, ItemStatus.DELIVERED, now)
            self.history.append(
                HistoryRecord(
                    transfer_id=transfer.id,
                    item_id=item.id,
                    action=HistoryAction.DELIVERED,
                    from_status=ItemStatus.PREPARED,
                    to_status=ItemStatus.DELIVERED,
                    actor=actor,
                    notes=notes,
                    details={
                        "received_quantity": received_quantity,
                        "shortfall_quantity": shortfall,
                        "batches": settled,
                    },
                ),
                recorded_at=now,
            )
            self._refresh_transfer_status(transfer, now)

        self._after_commit(
            actor,
            "transfers.deliver",
            transfer,
            item=item,
            before={"status": ItemStatus.PREPARED.value},
            after={
                "status": ItemStatus.DELIVERED.value,
                "received_quantity": received_quantity,
                "shortfall_quantity": shortfall,
            },
        )
        return item

    def cancel_item(self, actor: Actor, transfer_id, item_id, reason: str) -> TransferItem:
        now = self._clock()
        with self._unit_of_work():
            transfer = self._load_transfer(actor, transfer_id)
            item = self._load_item(transfer, item_id)
            require_permission(actor, TransferOperation.CANCEL_ITEM, TransferScope.from_transfer(transfer))
            previous = self._require_status(item, ItemStatus.CANCELLED)
            if _blank(reason):
                raise _validation_error("cancellation reason is required")
            self._cancel(actor, transfer, item, previous, reason.strip(), now)
            status = self._refresh_transfer_status(transfer, now)
            if status is TransferStatus.CANCELLED:
                self._stamp_once(transfer, ItemStatus.CANCELLED, now)

        self._after_commit(
            actor,
            "transfers.cancel_item",
            transfer,
            item=item,
            before={"status": previous.value},
            after={"status": ItemStatus.CANCELLED.value, "reason": reason.strip()},
        )
        return item

    def cancel_transfer(self, actor: Actor, transfer_id, reason: str) -> Transfer:
        now = self._clock()
        with self._unit_of_work():
            transfer = self._load_transfer(actor, transfer_id)
            require_permission(actor, TransferOperation.CANCEL_TRANSFER, TransferScope.from_transfer(transfer))
            if _blank(reason):
                raise _validation_error("cancellation reason is required")
            reason = reason.strip()
            live_items = [item for item in self.repo.get_items(transfer.id) if is_live(item.status)]
            if not live_items:
                raise AppError(
                    ErrorCatalog.INVALID_TRANSITION,
                    details={
                        "message": "transfer has no items left to cancel",
                        "transfer_id": str(transfer.id),
                        "status": transfer.status,
                    },
                )
            previous_status = transfer.status
            for item in live_items:
                self._cancel(actor, transfer, item, ItemStatus(item.status), reason, now)
            self.db.execute(
                update(Transfer)
                .where(Transfer.id == transfer.id)
                .values(cancel_reason=reason, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self._stamp_once(transfer, ItemStatus.CANCELLED, now)
            status = self._refresh_transfer_status(transfer, now)
            self.history.append(
                HistoryRecord(
                    transfer_id=transfer.id,
                    action=HistoryAction.CANCELLED,
                    from_status=previous_status,
                    to_status=status,
                    actor=actor,
                    notes=reason,
                    details={"cancelled_item_ids": [str(item.id) for item in live_items]},
                ),
                recorded_at=now,
            )

        self._after_commit(
            actor,
            "transfers.cancel",
            transfer,
            item=None,
            before={"status": previous_status},
            after={"status": status.value, "reason": reason},
            transitions=len(live_items),
        )
        return transfer

    def _approve(self, actor: Actor, transfer: Transfer, item: TransferItem, approved_quantity, notes, now) -> None:
        self._require_status(item, ItemStatus.APPROVED)
        if not _is_quantity(approved_quantity) or approved_quantity <= 0:
            raise _validation_error(
                "approved quantity must be greater than zero",
                item_id=str(item.id),
                approved_quantity=approved_quantity,
            )
        if approved_quantity > item.requested_quantity:
            raise _validation_error(
                "approved quantity exceeds the requested quantity",
                item_id=str(item.id),
                approved_quantity=approved_quantity,
                requested_quantity=item.requested_quantity,
            )
        self._transition(
            item,
            ItemStatus.PENDING,
            ItemStatus.APPROVED,
            now,
            approved_quantity=approved_quantity,
            approved_at=now,
            approved_by_id=actor.user_id,
        )
        self._stamp_once(transfer, ItemStatus.APPROVED, now)
        self.history.append(
            HistoryRecord(
                transfer_id=transfer.id,
                item_id=item.id,
                action=HistoryAction.APPROVED,
                from_status=ItemStatus.PENDING,
                to_status=ItemStatus.APPROVED,
                actor=actor,
                notes=notes,
                details={"approved_quantity": approved_quantity, "requested_quantity": item.requested_quantity},
            ),
            recorded_at=now,
        )

    def _cancel(self, actor: Actor, transfer: Transfer, item: TransferItem, previous: ItemStatus, reason, now):
        self._transition(
            item,
            previous,
            ItemStatus.CANCELLED,
            now,
            cancel_reason=reason,
            cancelled_at=now,
            cancelled_by_id=actor.user_id,
        )
        released = []
        if previous is ItemStatus.PREPARED:
            for allocation in self.repo.get_allocations([item.id]):
                self.ledger.release_batch_quantity(
                    allocation.batch_id,
                    allocation.quantity,
                    transfer_item_id=item.id,
                )
                released.append({"batch_id": str(allocation.batch_id), "quantity": allocation.quantity})
        self.history.append(
            HistoryRecord(
                transfer_id=transfer.id,
                item_id=item.id,
                action=HistoryAction.CANCELLED,
                from_status=previous,
                to_status=ItemStatus.CANCELLED,
                actor=actor,
                notes=reason,
                details={"released_batches": released} if released else None,
            ),
            recorded_at=now,
        )

    def _load_transfer(self, actor: Actor, transfer_id) -> Transfer:
        transfer = self.repo.get_transfer_for_update(_parse_id(transfer_id, "transfer"), actor.organization_id)
        if transfer is None:
            raise _not_found("transfer", transfer_id)
        return transfer

    def _load_item(self, transfer: Transfer, item_id) -> TransferItem:
        item = self.repo.get_item(_parse_id(item_id, "item"), transfer.id)
        if item is None:
            raise _not_found("item", item_id)
        return item

    def _require_status(self, item: TransferItem, target: ItemStatus) -> ItemStatus:
        current = ItemStatus(item.status)
        if not can_transition(current, target):
            raise AppError(
                ErrorCatalog.INVALID_TRANSITION,
                details={
                    "item_id": str(item.id),
                    "status": current.value,
                    "target_status": target.value,
                },
            )
        return current

    def _transition(self, item: TransferItem, source: ItemStatus, target: ItemStatus, now, **values) -> None:
        result = self.db.execute(
            update(TransferItem)
            .where(TransferItem.id == item.id, TransferItem.status == source.value)
            .values(status=target.value, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AppError(
                ErrorCatalog.INVALID_TRANSITION,
                details={
                    "item_id": str(item.id),
                    "message": "item changed concurrently",
                    "target_status": target.value,
                },
            )
        self.db.refresh(item)

    def _stamp_once(self, transfer: Transfer, status: ItemStatus, now) -> None:
        column = getattr(Transfer, TRANSFER_TIMESTAMP_FIELDS[status])
        self.db.execute(
            update(Transfer)
            .where(Transfer.id == transfer.id, column.is_(None))
            .values({column: now})
            .execution_options(synchronize_session=False)
        )

    def _refresh_transfer_status(self, transfer: Transfer, now) -> TransferStatus:
        status = derive_transfer_status(self.repo.get_item_statuses(transfer.id))
        self.db.execute(
            update(Transfer)
            .where(Transfer.id == transfer.id)
            .values(status=status.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(transfer)
        return status

    def _next_code(self, organization_id, now: datetime) -> str:
        prefix = f"{settings.TRANSFER_CODE_PREFIX}-{now:%Y%m}-"
        last = self.repo.last_code_with_prefix(organization_id, prefix)
        sequence = 1
        if last:
            suffix = last[len(prefix):]
            if suffix.isdigit():
                sequence = int(suffix) + 1
        return f"{prefix}{sequence:04d}"

    def _after_commit(self, actor: Actor, action: str, transfer: Transfer, *, item, before, after, transitions=1):
        transfer_id = str(transfer.id)
        item_id = str(item.id) if item is not None else None
        metrics.increment_transfer_transition(action, transitions)
        log_json(
            logger,
            {
                "event": "transfer_transition",
                "action": action,
                "transfer_id": transfer_id,
                "item_id": item_id,
                "from": before,
                "to": after,
                "actor_id": actor.user_id,
                "organization_id": actor.organization_id,
                "trace_id": self.trace_id,
            },
        )
        AuditService(self.db).record_event(
            AuditEventPayload(
                organization_id=actor.organization_id,
                user_id=actor.user_id,
                trace_id=self.trace_id,
                actor=actor.name or actor.user_id,
                action=action,
                entity_type="transfer_item" if item is not None else "transfer",
                entity_id=item_id or transfer_id,
                before=before,
                after=after,
                metadata={"transfer_id": transfer_id},
                result="success",
                actor_role=actor.role.value,
            )
        )

