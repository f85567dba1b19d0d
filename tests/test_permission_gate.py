import pytest
from datetime import datetime

from app.medstock.core.context import build_actor
from app.medstock.core.error_catalog import AppError
from app.medstock.core.metrics import metrics
from app.medstock.services.permissions import (
    TransferOperation,
    TransferScope,
    allowed_actions,
    evaluate_permission,
    require_permission,
)

SUPPLYING = "11111111-1111-1111-1111-111111111111"
REQUESTING = "22222222-2222-2222-2222-222222222222"
ORG = "33333333-3333-3333-3333-333333333333"


def _actor(role="MEMBER", departments=()):
    return build_actor(user_id="u-1", organization_id=ORG, role=role, department_ids=departments)


def _scope(approved=False):
    return TransferScope(
        requesting_department_id=REQUESTING,
        supplying_department_id=SUPPLYING,
        approved_at=datetime(2026, 10, 1) if approved else None,
    )


@pytest.mark.parametrize(
    "operation",
    [TransferOperation.APPROVE_ITEM, TransferOperation.APPROVE_ALL_ITEMS, TransferOperation.PREPARE_ITEM],
)
def test_supplying_membership_gates_fulfilment(operation):
    assert evaluate_permission(_actor(departments=[SUPPLYING]), operation, _scope()).allowed
    assert not evaluate_permission(_actor(departments=[REQUESTING]), operation, _scope()).allowed
    assert not evaluate_permission(_actor(role="OWNER"), operation, _scope()).allowed


def test_requesting_membership_gates_delivery():
    operation = TransferOperation.DELIVER_ITEM
    assert evaluate_permission(_actor(departments=[REQUESTING]), operation, _scope()).allowed
    assert not evaluate_permission(_actor(departments=[SUPPLYING]), operation, _scope()).allowed
    assert not evaluate_permission(_actor(role="ADMIN"), operation, _scope()).allowed


def test_item_cancellation_requires_admin_role():
    operation = TransferOperation.CANCEL_ITEM
    assert evaluate_permission(_actor(role="ADMIN"), operation, _scope(approved=True)).allowed
    assert evaluate_permission(_actor(role="OWNER"), operation, _scope()).allowed
    assert not evaluate_permission(_actor(departments=[SUPPLYING, REQUESTING]), operation, _scope()).allowed


def test_transfer_cancellation_blocked_after_approval():
    operation = TransferOperation.CANCEL_TRANSFER
    assert evaluate_permission(_actor(role="OWNER"), operation, _scope()).allowed
    decision = evaluate_permission(_actor(role="OWNER"), operation, _scope(approved=True))
    assert not decision.allowed
    assert "approved" in decision.reason
    assert not evaluate_permission(_actor(departments=[REQUESTING]), operation, _scope()).allowed


def test_create_allows_requesting_members_and_admins():
    operation = TransferOperation.CREATE
    assert evaluate_permission(_actor(departments=[REQUESTING]), operation, _scope()).allowed
    assert evaluate_permission(_actor(role="ADMIN"), operation, _scope()).allowed
    assert not evaluate_permission(_actor(departments=[SUPPLYING]), operation, _scope()).allowed


def test_require_permission_raises_and_counts_denial():
    metrics.reset()
    with pytest.raises(AppError) as excinfo:
        require_permission(_actor(departments=[REQUESTING]), TransferOperation.PREPARE_ITEM, _scope())

    assert excinfo.value.code == "PERMISSION_DENIED"
    assert excinfo.value.details["operation"] == "prepare_item"
    if metrics.enabled:
        assert "permission_denied_total" in metrics.render().content.decode("utf-8")


def test_allowed_actions_projection():
    actions = allowed_actions(_actor(departments=[SUPPLYING]), _scope())

    assert actions == {
        "can_approve": True,
        "can_prepare": True,
        "can_deliver": False,
        "can_cancel_item": False,
        "can_cancel_transfer": False,
    }
