from __future__ import annotations

import math
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from app.medstock.core.config import settings
from app.medstock.core.context import Actor
from app.medstock.core.error_catalog import AppError, ErrorCatalog
from app.medstock.db.models import StockBatch, Transfer, TransferHistory, TransferItem, TransferItemBatch
from app.medstock.repos.catalog import CatalogRepository
from app.medstock.repos.transfers import (
    DIRECTION_ANY,
    DIRECTION_INCOMING,
    DIRECTION_OUTGOING,
    TransferQueryFilters,
    TransferRepository,
)
from app.medstock.services.batch_allocator import is_expired, is_expiring_soon
from app.medstock.services.permissions import TransferScope, allowed_actions
from app.medstock.services.stock_ledger import StockLedger
from app.medstock.services.transfer_state import TransferPriority, TransferStatus

SORT_FIELDS = ("requestedAt", "createdAt", "priority", "code")
DIRECTIONS = (DIRECTION_ANY, DIRECTION_INCOMING, DIRECTION_OUTGOING)


@dataclass(frozen=True)
class TransferPage:
    rows: list[Transfer]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(frozen=True)
class TransferStats:
    total: int = 0
    pending: int = 0
    approved: int = 0
    prepared: int = 0
    completed: int = 0
    cancelled: int = 0


@dataclass
class TransferDetail:
    transfer: Transfer
    items: list[TransferItem]
    allocations: dict[str, list[TransferItemBatch]] = field(default_factory=dict)
    history: list[TransferHistory] = field(default_factory=list)
    allowed_actions: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchView:
    batch: StockBatch
    expiring_soon: bool
    expired: bool


def _invalid(message: str, **details) -> AppError:
    return AppError(ErrorCatalog.VALIDATION_ERROR, details={"message": message, **details})


def _naive_utc(value: datetime | None) -> datetime | None:
    # requested_at is stored as naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _uuid_or_not_found(value, resource: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise AppError(ErrorCatalog.NOT_FOUND, details={"resource": resource, "id": str(value)}) from exc


class TransferQueryService:
    """Read-only projections over persisted transfers."""

    def __init__(self, db, *, today: date | None = None):
        self.db = db
        self.repo = TransferRepository(db)
        self.catalog = CatalogRepository(db)
        self.ledger = StockLedger(db)
        self._today = today

    def list_transfers(
        self,
        actor: Actor,
        *,
        status: str | None = None,
        priority: str | None = None,
        search: str | None = None,
        department_id: str | None = None,
        direction: str = DIRECTION_ANY,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        sort_by: str = "requestedAt",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> TransferPage:
        if page < 1:
            raise _invalid("page must be at least 1", page=page)
        if limit < 1 or limit > settings.TRANSFER_LIST_MAX_PAGE_SIZE:
            raise _invalid(
                "limit out of range",
                limit=limit,
                max_limit=settings.TRANSFER_LIST_MAX_PAGE_SIZE,
            )
        if sort_by not in SORT_FIELDS:
            raise _invalid("unsupported sort field", sort_by=sort_by, allowed=list(SORT_FIELDS))
        if sort_order.lower() not in ("asc", "desc"):
            raise _invalid("sort order must be asc or desc", sort_order=sort_order)
        date_from = _naive_utc(date_from)
        date_to = _naive_utc(date_to)
        if date_from and date_to and date_from > date_to:
            raise _invalid("date_from must not be after date_to")
        filters = self._filters(
            actor,
            status=status,
            priority=priority,
            search=search,
            department_id=department_id,
            direction=direction,
            date_from=date_from,
            date_to=date_to,
        )
        rows, total = self.repo.list_transfers(
            filters,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return TransferPage(rows=rows, page=page, limit=limit, total=total)

    def stats(self, actor: Actor, *, department_id: str | None = None, direction: str = DIRECTION_ANY) -> TransferStats:
        counts = self.repo.status_counts(self._filters(actor, department_id=department_id, direction=direction))
        return TransferStats(
            total=sum(counts.values()),
            pending=counts.get(TransferStatus.PENDING.value, 0),
            approved=counts.get(TransferStatus.APPROVED.value, 0),
            prepared=counts.get(TransferStatus.PREPARED.value, 0),
            completed=counts.get(TransferStatus.COMPLETED.value, 0) + counts.get("DELIVERED", 0),
            cancelled=counts.get(TransferStatus.CANCELLED.value, 0),
        )

    def get_transfer_detail(self, actor: Actor, transfer_id) -> TransferDetail:
        transfer = self._require_transfer(actor, transfer_id)
        items = self.repo.get_items(transfer.id)
        allocations: dict[str, list[TransferItemBatch]] = defaultdict(list)
        for allocation in self.repo.get_allocations([item.id for item in items]):
            allocations[str(allocation.transfer_item_id)].append(allocation)
        return TransferDetail(
            transfer=transfer,
            items=items,
            allocations=dict(allocations),
            history=self.repo.get_history(transfer.id),
            allowed_actions=allowed_actions(actor, TransferScope.from_transfer(transfer)),
        )

    def get_history(self, actor: Actor, transfer_id) -> list[TransferHistory]:
        transfer = self._require_transfer(actor, transfer_id)
        return self.repo.get_history(transfer.id)

    def get_batches_for_allocation(self, actor: Actor, department_id, product_id) -> list[BatchView]:
        department = self._require_department(actor, department_id)
        product_uuid = _uuid_or_not_found(product_id, "product")
        if not self.catalog.get_products([product_uuid], actor.organization_id):
            raise AppError(ErrorCatalog.NOT_FOUND, details={"resource": "product", "id": str(product_id)})
        today = self._today or date.today()
        return [
            BatchView(
                batch=batch,
                expiring_soon=is_expiring_soon(batch.expiry_date, today, settings.EXPIRING_SOON_DAYS),
                expired=is_expired(batch.expiry_date, today),
            )
            for batch in self.ledger.get_available_batches(department.id, product_uuid)
        ]

    def _filters(
        self,
        actor: Actor,
        *,
        status: str | None = None,
        priority: str | None = None,
        search: str | None = None,
        department_id: str | None = None,
        direction: str = DIRECTION_ANY,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> TransferQueryFilters:
        if status and status not in {value.value for value in TransferStatus}:
            raise _invalid("unknown status", status=status)
        if priority and priority not in {value.value for value in TransferPriority}:
            raise _invalid("unknown priority", priority=priority)
        if direction not in DIRECTIONS:
            raise _invalid("unknown direction", direction=direction, allowed=list(DIRECTIONS))
        resolved_department = None
        if department_id:
            resolved_department = str(self._require_department(actor, department_id).id)
        return TransferQueryFilters(
            organization_id=actor.organization_id,
            status=status,
            priority=priority,
            search=search.strip() if search and search.strip() else None,
            department_id=resolved_department,
            direction=direction,
            date_from=date_from,
            date_to=date_to,
        )

    def _require_transfer(self, actor: Actor, transfer_id) -> Transfer:
        transfer = self.repo.get_transfer(_uuid_or_not_found(transfer_id, "transfer"), actor.organization_id)
        if transfer is None:
            raise AppError(ErrorCatalog.NOT_FOUND, details={"resource": "transfer", "id": str(transfer_id)})
        return transfer

    def _require_department(self, actor: Actor, department_id):
        department = self.catalog.get_department(
            _uuid_or_not_found(department_id, "department"),
            actor.organization_id,
        )
        if department is None:
            raise AppError(ErrorCatalog.NOT_FOUND, details={"resource": "department", "id": str(department_id)})
        return department
