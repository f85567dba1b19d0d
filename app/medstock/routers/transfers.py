from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from app.medstock.core.context import Actor
from app.medstock.core.deps import require_actor
from app.medstock.db.models import Transfer, TransferHistory, TransferItem
from app.medstock.db.session import get_db
from app.medstock.repos.transfers import DIRECTION_INCOMING, DIRECTION_OUTGOING
from app.medstock.schemas.errors import ApiErrorResponse
from app.medstock.schemas.transfers import (
    ActorSnapshot,
    AllowedActions,
    ApproveAllRequest,
    ApproveItemRequest,
    CancelRequest,
    DeliverItemRequest,
    DepartmentRef,
    PaginationMeta,
    PrepareItemRequest,
    ProductRef,
    TransferCreateRequest,
    TransferHistoryListResponse,
    TransferHistoryResponse,
    TransferItemBatchResponse,
    TransferItemResponse,
    TransferListResponse,
    TransferResponse,
    TransferStatsResponse,
    TransferSummaryResponse,
)
from app.medstock.services.batch_allocator import BatchSelection
from app.medstock.services.transfer_query import TransferDetail, TransferPage, TransferQueryService
from app.medstock.services.transfer_workflow import NewTransfer, NewTransferItem, TransferWorkflowService

_ERROR_RESPONSES = {
    status_code: {"model": ApiErrorResponse} for status_code in (401, 403, 404, 409, 422)
}

router = APIRouter(responses=_ERROR_RESPONSES)

SortField = Literal["requestedAt", "createdAt", "priority", "code"]
SortOrder = Literal["asc", "desc"]


def _workflow(request: Request, db) -> TransferWorkflowService:
    return TransferWorkflowService(db, trace_id=getattr(request.state, "trace_id", "") or None)


def _department_ref(department) -> DepartmentRef:
    return DepartmentRef(id=str(department.id), name=department.name)


def _summary_fields(transfer: Transfer) -> dict:
    return {
        "id": str(transfer.id),
        "code": transfer.code,
        "title": transfer.title,
        "priority": transfer.priority,
        "status": transfer.status,
        "requesting_department": _department_ref(transfer.requesting_department),
        "supplying_department": _department_ref(transfer.supplying_department),
        "requested_by_id": transfer.requested_by_id,
        "requested_at": transfer.requested_at,
        "approved_at": transfer.approved_at,
        "prepared_at": transfer.prepared_at,
        "delivered_at": transfer.delivered_at,
        "cancelled_at": transfer.cancelled_at,
        "created_at": transfer.created_at,
        "updated_at": transfer.updated_at,
    }


def _history_response(entry: TransferHistory) -> TransferHistoryResponse:
    snapshot = entry.changed_by or {}
    return TransferHistoryResponse(
        id=str(entry.id),
        item_id=str(entry.item_id) if entry.item_id else None,
        action=entry.action,
        from_status=entry.from_status,
        to_status=entry.to_status,
        changed_by=ActorSnapshot(
            id=snapshot.get("id") or entry.changed_by_id,
            name=snapshot.get("name"),
            role=snapshot.get("role"),
        ),
        notes=entry.notes,
        details=entry.details,
        created_at=entry.created_at,
    )


def _item_response(item: TransferItem, allocations) -> TransferItemResponse:
    product = item.product
    return TransferItemResponse(
        id=str(item.id),
        product=ProductRef(id=str(product.id), code=product.code, name=product.name, base_unit=product.base_unit),
        requested_quantity=item.requested_quantity,
        approved_quantity=item.approved_quantity,
        prepared_quantity=item.prepared_quantity,
        received_quantity=item.received_quantity,
        status=item.status,
        notes=item.notes,
        cancel_reason=item.cancel_reason,
        approved_at=item.approved_at,
        prepared_at=item.prepared_at,
        delivered_at=item.delivered_at,
        cancelled_at=item.cancelled_at,
        batches=[
            TransferItemBatchResponse(
                batch_id=str(allocation.batch_id),
                lot_number=allocation.lot_number,
                expiry_date=allocation.expiry_date,
                quantity=allocation.quantity,
            )
            for allocation in allocations
        ],
    )


def _transfer_response(detail: TransferDetail) -> TransferResponse:
    transfer = detail.transfer
    return TransferResponse(
        **_summary_fields(transfer),
        request_reason=transfer.request_reason,
        notes=transfer.notes,
        cancel_reason=transfer.cancel_reason,
        items=[_item_response(item, detail.allocations.get(str(item.id), [])) for item in detail.items],
        history=[_history_response(entry) for entry in detail.history],
        allowed_actions=AllowedActions(**detail.allowed_actions),
    )


def _list_response(page: TransferPage) -> TransferListResponse:
    return TransferListResponse(
        rows=[TransferSummaryResponse(**_summary_fields(transfer)) for transfer in page.rows],
        pagination=PaginationMeta(
            page=page.page,
            limit=page.limit,
            total=page.total,
            total_pages=page.total_pages,
        ),
    )


def _detail(db, actor: Actor, transfer_id) -> TransferResponse:
    return _transfer_response(TransferQueryService(db).get_transfer_detail(actor, transfer_id))


@router.get("/medstock/transfers", response_model=TransferListResponse)
def list_transfers(
    status: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    search: str | None = Query(default=None),
    department_id: str | None = Query(default=None),
    direction: Literal["any", "incoming", "outgoing"] = Query(default="any"),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    sort_by: SortField = Query(default="requestedAt"),
    sort_order: SortOrder = Query(default="desc"),
    page: int = Query(default=1),
    limit: int = Query(default=20),
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    result = TransferQueryService(db).list_transfers(
        actor,
        status=status,
        priority=priority,
        search=search,
        department_id=department_id,
        direction=direction,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return _list_response(result)


@router.get("/medstock/transfers/stats", response_model=TransferStatsResponse)
def transfer_stats(
    department_id: str | None = Query(default=None),
    direction: Literal["any", "incoming", "outgoing"] = Query(default="any"),
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    stats = TransferQueryService(db).stats(actor, department_id=department_id, direction=direction)
    return TransferStatsResponse(
        total=stats.total,
        pending=stats.pending,
        approved=stats.approved,
        prepared=stats.prepared,
        completed=stats.completed,
        cancelled=stats.cancelled,
    )


@router.post("/medstock/transfers", response_model=TransferResponse, status_code=201)
def create_transfer(
    request: Request,
    payload: TransferCreateRequest,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    transfer = _workflow(request, db).create_transfer(
        actor,
        NewTransfer(
            requesting_department_id=payload.requesting_department_id,
            supplying_department_id=payload.supplying_department_id,
            title=payload.title,
            request_reason=payload.request_reason,
            priority=payload.priority,
            notes=payload.notes,
            items=[
                NewTransferItem(
                    product_id=item.product_id,
                    requested_quantity=item.requested_quantity,
                    notes=item.notes,
                )
                for item in payload.items
            ],
        ),
    )
    return _detail(db, actor, transfer.id)


@router.get("/medstock/transfers/{transfer_id}", response_model=TransferResponse)
def get_transfer_detail(
    transfer_id: str,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    return _detail(db, actor, transfer_id)


@router.get("/medstock/transfers/{transfer_id}/history", response_model=TransferHistoryListResponse)
def get_transfer_history(
    transfer_id: str,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    history = TransferQueryService(db).get_history(actor, transfer_id)
    return TransferHistoryListResponse(rows=[_history_response(entry) for entry in history])


@router.post("/medstock/transfers/{transfer_id}/approve-all", response_model=TransferResponse)
def approve_all_items(
    transfer_id: str,
    request: Request,
    payload: ApproveAllRequest | None = None,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    notes = payload.notes if payload else None
    _workflow(request, db).approve_all_items(actor, transfer_id, notes=notes)
    return _detail(db, actor, transfer_id)


@router.post("/medstock/transfers/{transfer_id}/cancel", response_model=TransferResponse)
def cancel_transfer(
    transfer_id: str,
    request: Request,
    payload: CancelRequest,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    _workflow(request, db).cancel_transfer(actor, transfer_id, payload.reason)
    return _detail(db, actor, transfer_id)


@router.post("/medstock/transfers/{transfer_id}/items/{item_id}/approve", response_model=TransferResponse)
def approve_item(
    transfer_id: str,
    item_id: str,
    request: Request,
    payload: ApproveItemRequest,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    _workflow(request, db).approve_item(actor, transfer_id, item_id, payload.approved_quantity, payload.notes)
    return _detail(db, actor, transfer_id)


@router.post("/medstock/transfers/{transfer_id}/items/{item_id}/prepare", response_model=TransferResponse)
def prepare_item(
    transfer_id: str,
    item_id: str,
    request: Request,
    payload: PrepareItemRequest,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    selections = [BatchSelection(batch_id=entry.batch_id, quantity=entry.quantity) for entry in payload.batches]
    _workflow(request, db).prepare_item(actor, transfer_id, item_id, selections, payload.notes)
    return _detail(db, actor, transfer_id)


@router.post("/medstock/transfers/{transfer_id}/items/{item_id}/deliver", response_model=TransferResponse)
def deliver_item(
    transfer_id: str,
    item_id: str,
    request: Request,
    payload: DeliverItemRequest,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    _workflow(request, db).deliver_item(actor, transfer_id, item_id, payload.received_quantity, payload.notes)
    return _detail(db, actor, transfer_id)


@router.post("/medstock/transfers/{transfer_id}/items/{item_id}/cancel", response_model=TransferResponse)
def cancel_item(
    transfer_id: str,
    item_id: str,
    request: Request,
    payload: CancelRequest,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    _workflow(request, db).cancel_item(actor, transfer_id, item_id, payload.reason)
    return _detail(db, actor, transfer_id)


def _department_list(direction: str):
    def endpoint(
        department_id: str,
        status: str | None = Query(default=None),
        priority: str | None = Query(default=None),
        search: str | None = Query(default=None),
        sort_by: SortField = Query(default="requestedAt"),
        sort_order: SortOrder = Query(default="desc"),
        page: int = Query(default=1),
        limit: int = Query(default=20),
        actor: Actor = Depends(require_actor),
        db=Depends(get_db),
    ):
        result = TransferQueryService(db).list_transfers(
            actor,
            status=status,
            priority=priority,
            search=search,
            department_id=department_id,
            direction=direction,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
        return _list_response(result)

    return endpoint


router.add_api_route(
    "/medstock/departments/{department_id}/transfers/incoming",
    _department_list(DIRECTION_INCOMING),
    methods=["GET"],
    response_model=TransferListResponse,
    name="list_incoming_transfers",
)
router.add_api_route(
    "/medstock/departments/{department_id}/transfers/outgoing",
    _department_list(DIRECTION_OUTGOING),
    methods=["GET"],
    response_model=TransferListResponse,
    name="list_outgoing_transfers",
)
