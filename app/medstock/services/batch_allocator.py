"""FIFO-by-expiry ordering and validation of operator batch selections.

The allocator never picks batches itself. Operators choose quantities per
batch at prepare time; this module orders the candidates (soonest expiry
first, undated batches last) and checks a proposed split.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any


@dataclass(frozen=True)
class BatchSelection:
    batch_id: str
    quantity: int


@dataclass(frozen=True)
class AllocationViolation:
    code: str
    message: str
    batch_id: str | None = None
    details: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.batch_id is not None:
            payload["batch_id"] = self.batch_id
        payload.update(self.details)
        return payload


UNKNOWN_BATCH = "UNKNOWN_BATCH"
DUPLICATE_BATCH = "DUPLICATE_BATCH"
NON_POSITIVE_QUANTITY = "NON_POSITIVE_QUANTITY"
EXCEEDS_AVAILABLE = "EXCEEDS_AVAILABLE"
EXCEEDS_TARGET = "EXCEEDS_TARGET"

STOCK_VIOLATIONS = frozenset({EXCEEDS_AVAILABLE})


def _expiry_key(batch: Any) -> tuple[int, date]:
    expiry = getattr(batch, "expiry_date", None)
    if expiry is None:
        return (1, date.max)
    return (0, expiry)


def sort_for_allocation(batches: Iterable[Any]) -> list:
    """Order batches ascending by expiry date, undated batches last.

    ``sorted`` is stable, so equal expiry dates keep their input order.
    """
    return sorted(batches, key=_expiry_key)


def validate_allocation(
    batches: Sequence[Any],
    selections: Sequence[BatchSelection],
    target_max: int,
) -> list[AllocationViolation]:
    by_id = {str(batch.id): batch for batch in batches}
    violations: list[AllocationViolation] = []
    seen: set[str] = set()
    total = 0

    for selection in selections:
        batch_id = str(selection.batch_id)
        if batch_id in seen:
            violations.append(
                AllocationViolation(DUPLICATE_BATCH, "batch selected more than once", batch_id=batch_id)
            )
            continue
        seen.add(batch_id)
        batch = by_id.get(batch_id)
        if batch is None:
            violations.append(
                AllocationViolation(UNKNOWN_BATCH, "batch is not available for this product", batch_id=batch_id)
            )
            continue
        if selection.quantity <= 0:
            violations.append(
                AllocationViolation(
                    NON_POSITIVE_QUANTITY,
                    "quantity must be greater than zero",
                    batch_id=batch_id,
                    details={"quantity": selection.quantity},
                )
            )
            continue
        total += selection.quantity
        if selection.quantity > batch.available_quantity:
            violations.append(
                AllocationViolation(
                    EXCEEDS_AVAILABLE,
                    "quantity exceeds batch available quantity",
                    batch_id=batch_id,
                    details={"quantity": selection.quantity, "available_quantity": batch.available_quantity},
                )
            )

    if total > target_max:
        violations.append(
            AllocationViolation(
                EXCEEDS_TARGET,
                "selected quantity exceeds the approved quantity",
                details={"selected_quantity": total, "max_quantity": target_max},
            )
        )
    return violations


def distribute_quantity(allocations: Sequence[Any], quantity: int) -> list[tuple[Any, int]]:
    """Spread ``quantity`` over allocations in the given order, filling each before the next."""
    remaining = quantity
    split = []
    for allocation in allocations:
        taken = min(remaining, allocation.quantity)
        split.append((allocation, taken))
        remaining -= taken
    if remaining > 0:
        raise ValueError("quantity exceeds the allocated total")
    return split


def is_expired(expiry_date: date | None, today: date) -> bool:
    return expiry_date is not None and expiry_date < today


def is_expiring_soon(expiry_date: date | None, today: date, window_days: int) -> bool:
    if expiry_date is None or is_expired(expiry_date, today):
        return False
    return expiry_date <= today + timedelta(days=window_days)
