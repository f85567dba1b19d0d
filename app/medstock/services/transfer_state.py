"""Statuses of transfers and transfer items and the rules linking them.

Items are the unit of progression. The transfer status is a denormalized
projection of its items and is recomputed after every item transition.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PREPARED = "PREPARED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PREPARED = "PREPARED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TransferPriority(str, Enum):
    NORMAL = "NORMAL"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class HistoryAction(str, Enum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    PREPARED = "PREPARED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


PRIORITY_RANK = {
    TransferPriority.NORMAL: 1,
    TransferPriority.URGENT: 2,
    TransferPriority.CRITICAL: 3,
}

ITEM_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.APPROVED, ItemStatus.CANCELLED}),
    ItemStatus.APPROVED: frozenset({ItemStatus.PREPARED, ItemStatus.CANCELLED}),
    ItemStatus.PREPARED: frozenset({ItemStatus.DELIVERED, ItemStatus.CANCELLED}),
    ItemStatus.DELIVERED: frozenset(),
    ItemStatus.CANCELLED: frozenset(),
}

TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.DELIVERED, ItemStatus.CANCELLED})

# transfer-level timestamp stamped the first time an item reaches the status
TRANSFER_TIMESTAMP_FIELDS = {
    ItemStatus.APPROVED: "approved_at",
    ItemStatus.PREPARED: "prepared_at",
    ItemStatus.DELIVERED: "delivered_at",
    ItemStatus.CANCELLED: "cancelled_at",
}

_WORKING_ORDER = (ItemStatus.PENDING, ItemStatus.APPROVED, ItemStatus.PREPARED)


def can_transition(current: ItemStatus | str, target: ItemStatus | str) -> bool:
    return ItemStatus(target) in ITEM_TRANSITIONS[ItemStatus(current)]


def is_live(status: ItemStatus | str) -> bool:
    return ItemStatus(status) not in TERMINAL_ITEM_STATUSES


def derive_transfer_status(item_statuses: Iterable[ItemStatus | str]) -> TransferStatus:
    statuses = [ItemStatus(status) for status in item_statuses]
    if not statuses:
        raise ValueError("a transfer needs at least one item to derive its status")
    live = [status for status in statuses if status is not ItemStatus.CANCELLED]
    if not live:
        return TransferStatus.CANCELLED
    working = [status for status in live if status is not ItemStatus.DELIVERED]
    if not working:
        return TransferStatus.COMPLETED
    lowest = min(working, key=_WORKING_ORDER.index)
    return TransferStatus(lowest.value)


def priority_rank(priority: TransferPriority | str) -> int:
    return PRIORITY_RANK[TransferPriority(priority)]
