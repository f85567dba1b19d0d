from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import aliased

from app.medstock.db.models import Department, Transfer, TransferHistory, TransferItem, TransferItemBatch
from app.medstock.services.transfer_state import PRIORITY_RANK

DIRECTION_INCOMING = "incoming"
DIRECTION_OUTGOING = "outgoing"
DIRECTION_ANY = "any"

_PRIORITY_ORDER = {priority.value: rank for priority, rank in PRIORITY_RANK.items()}


@dataclass(frozen=True)
class TransferQueryFilters:
    organization_id: str
    status: str | None = None
    priority: str | None = None
    search: str | None = None
    department_id: str | None = None
    direction: str = DIRECTION_ANY
    date_from: datetime | None = None
    date_to: datetime | None = None


class TransferRepository:
    def __init__(self, db):
        self.db = db

    def list_transfers(
        self,
        filters: TransferQueryFilters,
        *,
        page: int,
        limit: int,
        sort_by: str,
        sort_order: str,
    ) -> tuple[list[Transfer], int]:
        base_query = self._apply_filters(filters)
        total = self.db.execute(select(func.count()).select_from(base_query.subquery())).scalar_one()

        sort_column = self._resolve_sort_column(sort_by)
        if sort_order.lower() == "asc":
            ordering = (sort_column.asc(), Transfer.code.asc())
        else:
            ordering = (sort_column.desc(), Transfer.code.desc())

        query = base_query.order_by(*ordering).offset((page - 1) * limit).limit(limit)
        return self.db.execute(query).scalars().all(), int(total)

    def status_counts(self, filters: TransferQueryFilters) -> dict[str, int]:
        subquery = self._apply_filters(filters).subquery()
        rows = self.db.execute(
            select(subquery.c.status, func.count()).group_by(subquery.c.status)
        ).all()
        return {status: int(count) for status, count in rows}

    def _apply_filters(self, filters: TransferQueryFilters):
        requesting = aliased(Department)
        supplying = aliased(Department)
        query = (
            select(Transfer)
            .join(requesting, Transfer.requesting_department_id == requesting.id)
            .join(supplying, Transfer.supplying_department_id == supplying.id)
            .where(Transfer.organization_id == filters.organization_id)
        )
        if filters.status:
            query = query.where(Transfer.status == filters.status)
        if filters.priority:
            query = query.where(Transfer.priority == filters.priority)
        if filters.search:
            like = f"%{filters.search.strip()}%"
            query = query.where(
                or_(
                    Transfer.code.ilike(like),
                    Transfer.title.ilike(like),
                    requesting.name.ilike(like),
                    supplying.name.ilike(like),
                )
            )
        if filters.department_id:
            if filters.direction == DIRECTION_INCOMING:
                query = query.where(Transfer.requesting_department_id == filters.department_id)
            elif filters.direction == DIRECTION_OUTGOING:
                query = query.where(Transfer.supplying_department_id == filters.department_id)
            else:
                query = query.where(
                    or_(
                        Transfer.requesting_department_id == filters.department_id,
                        Transfer.supplying_department_id == filters.department_id,
                    )
                )
        if filters.date_from:
            query = query.where(Transfer.requested_at >= filters.date_from)
        if filters.date_to:
            query = query.where(Transfer.requested_at <= filters.date_to)
        return query

    def _resolve_sort_column(self, sort_by: str):
        if sort_by == "priority":
            return case(_PRIORITY_ORDER, value=Transfer.priority, else_=0)
        mapping = {
            "requestedAt": Transfer.requested_at,
            "createdAt": Transfer.created_at,
            "code": Transfer.code,
        }
        return mapping.get(sort_by, Transfer.requested_at)

    def get_transfer(self, transfer_id, organization_id) -> Transfer | None:
        return (
            self.db.execute(
                select(Transfer).where(Transfer.id == transfer_id, Transfer.organization_id == organization_id)
            )
            .scalars()
            .first()
        )

    def get_transfer_for_update(self, transfer_id, organization_id) -> Transfer | None:
        return (
            self.db.execute(
                select(Transfer)
                .where(Transfer.id == transfer_id, Transfer.organization_id == organization_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def get_items(self, transfer_id) -> list[TransferItem]:
        return (
            self.db.execute(
                select(TransferItem)
                .where(TransferItem.transfer_id == transfer_id)
                .order_by(TransferItem.position)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )

    def get_item(self, item_id, transfer_id) -> TransferItem | None:
        return (
            self.db.execute(
                select(TransferItem)
                .where(TransferItem.id == item_id, TransferItem.transfer_id == transfer_id)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def get_item_statuses(self, transfer_id) -> list[str]:
        return self.db.execute(
            select(TransferItem.status).where(TransferItem.transfer_id == transfer_id)
        ).scalars().all()

    def get_allocations(self, item_ids) -> list[TransferItemBatch]:
        if not item_ids:
            return []
        return (
            self.db.execute(
                select(TransferItemBatch)
                .where(TransferItemBatch.transfer_item_id.in_(list(item_ids)))
                .order_by(TransferItemBatch.transfer_item_id, TransferItemBatch.position)
            )
            .scalars()
            .all()
        )

    def get_history(self, transfer_id) -> list[TransferHistory]:
        return (
            self.db.execute(
                select(TransferHistory)
                .where(TransferHistory.transfer_id == transfer_id)
                .order_by(TransferHistory.sequence.desc(), TransferHistory.created_at.desc())
            )
            .scalars()
            .all()
        )

    def last_history_sequence(self, transfer_id) -> int:
        return int(
            self.db.execute(
                select(func.coalesce(func.max(TransferHistory.sequence), 0)).where(
                    TransferHistory.transfer_id == transfer_id
                )
            ).scalar_one()
        )

    def last_code_with_prefix(self, organization_id, prefix: str) -> str | None:
        return self.db.execute(
            select(func.max(Transfer.code)).where(
                Transfer.organization_id == organization_id,
                Transfer.code.like(f"{prefix}%"),
            )
        ).scalar_one_or_none()
