from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from app.medstock.core.context import Actor
from app.medstock.core.error_catalog import AppError, ErrorCatalog
from app.medstock.core.metrics import metrics


class TransferOperation(str, Enum):
    CREATE = "create_transfer"
    APPROVE_ITEM = "approve_item"
    APPROVE_ALL_ITEMS = "approve_all_items"
    PREPARE_ITEM = "prepare_item"
    DELIVER_ITEM = "deliver_item"
    CANCEL_ITEM = "cancel_item"
    CANCEL_TRANSFER = "cancel_transfer"


@dataclass(frozen=True)
class TransferScope:
    requesting_department_id: str
    supplying_department_id: str
    approved_at: datetime | None = None

    @classmethod
    def from_transfer(cls, transfer) -> "TransferScope":
        return cls(
            requesting_department_id=str(transfer.requesting_department_id),
            supplying_department_id=str(transfer.supplying_department_id),
            approved_at=transfer.approved_at,
        )


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: str | None = None


_SUPPLYING_OPERATIONS = frozenset(
    {TransferOperation.APPROVE_ITEM, TransferOperation.APPROVE_ALL_ITEMS, TransferOperation.PREPARE_ITEM}
)


def evaluate_permission(actor: Actor, operation: TransferOperation, scope: TransferScope) -> PermissionDecision:
    operation = TransferOperation(operation)
    if operation in _SUPPLYING_OPERATIONS:
        if actor.belongs_to(scope.supplying_department_id):
            return PermissionDecision(True)
        return PermissionDecision(False, "actor is not a member of the supplying department")
    if operation is TransferOperation.DELIVER_ITEM:
        if actor.belongs_to(scope.requesting_department_id):
            return PermissionDecision(True)
        return PermissionDecision(False, "actor is not a member of the requesting department")
    if operation is TransferOperation.CANCEL_ITEM:
        if actor.is_org_admin:
            return PermissionDecision(True)
        return PermissionDecision(False, "organization ADMIN or OWNER role required")
    if operation is TransferOperation.CANCEL_TRANSFER:
        if not actor.is_org_admin:
            return PermissionDecision(False, "organization ADMIN or OWNER role required")
        if scope.approved_at is not None:
            return PermissionDecision(False, "transfer already has approved items; cancel items individually")
        return PermissionDecision(True)
    if operation is TransferOperation.CREATE:
        if actor.belongs_to(scope.requesting_department_id) or actor.is_org_admin:
            return PermissionDecision(True)
        return PermissionDecision(False, "actor is not a member of the requesting department")
    return PermissionDecision(False, "operation not permitted")


def require_permission(actor: Actor, operation: TransferOperation, scope: TransferScope) -> None:
    decision = evaluate_permission(actor, operation, scope)
    if decision.allowed:
        return
    metrics.increment_permission_denied(TransferOperation(operation).value)
    raise AppError(
        ErrorCatalog.PERMISSION_DENIED,
        details={"operation": TransferOperation(operation).value, "reason": decision.reason},
    )


def allowed_actions(actor: Actor, scope: TransferScope) -> dict[str, bool]:
    return {
        "can_approve": evaluate_permission(actor, TransferOperation.APPROVE_ITEM, scope).allowed,
        "can_prepare": evaluate_permission(actor, TransferOperation.PREPARE_ITEM, scope).allowed,
        "can_deliver": evaluate_permission(actor, TransferOperation.DELIVER_ITEM, scope).allowed,
        "can_cancel_item": evaluate_permission(actor, TransferOperation.CANCEL_ITEM, scope).allowed,
        "can_cancel_transfer": evaluate_permission(actor, TransferOperation.CANCEL_TRANSFER, scope).allowed,
    }
