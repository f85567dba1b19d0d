from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel

Priority = Literal["NORMAL", "URGENT", "CRITICAL"]


class TransferItemCreate(BaseModel):
    product_id: str
    requested_quantity: int
    notes: str | None = None


class TransferCreateRequest(BaseModel):
    requesting_department_id: str
    supplying_department_id: str
    title: str
    request_reason: str | None = None
    priority: Priority = "NORMAL"
    notes: str | None = None
    items: list[TransferItemCreate]

    model_config = {
        "json_schema_extra": {
            "example": {
                "requesting_department_id": "0b7f7c1e-2f0a-4c55-9b7a-3c1f0e8d2a11",
                "supplying_department_id": "5d4c3b2a-1908-4f6e-8d7c-6b5a49382716",
                "title": "Ward restock",
                "request_reason": "Weekly top-up",
                "priority": "URGENT",
                "items": [{"product_id": "9e8d7c6b-5a49-4382-a716-0b7f7c1e2f0a", "requested_quantity": 100}],
            }
        }
    }


class ApproveItemRequest(BaseModel):
    approved_quantity: int
    notes: str | None = None


class ApproveAllRequest(BaseModel):
    notes: str | None = None


class BatchSelectionRequest(BaseModel):
    batch_id: str
    quantity: int


class PrepareItemRequest(BaseModel):
    batches: list[BatchSelectionRequest]
    notes: str | None = None


class DeliverItemRequest(BaseModel):
    received_quantity: int
    notes: str | None = None


class CancelRequest(BaseModel):
    reason: str = ""


class DepartmentRef(BaseModel):
    id: str
    name: str


class ProductRef(BaseModel):
    id: str
    code: str
    name: str
    base_unit: str


class TransferItemBatchResponse(BaseModel):
    batch_id: str
    lot_number: str | None
    expiry_date: date | None
    quantity: int


class TransferItemResponse(BaseModel):
    id: str
    product: ProductRef
    requested_quantity: int
    approved_quantity: int | None
    prepared_quantity: int | None
    received_quantity: int | None
    status: str
    notes: str | None
    cancel_reason: str | None
    approved_at: datetime | None
    prepared_at: datetime | None
    delivered_at: datetime | None
    cancelled_at: datetime | None
    batches: list[TransferItemBatchResponse] = []


class ActorSnapshot(BaseModel):
    id: str
    name: str | None = None
    role: str | None = None


class TransferHistoryResponse(BaseModel):
    id: str
    item_id: str | None
    action: str
    from_status: str | None
    to_status: str
    changed_by: ActorSnapshot
    notes: str | None
    details: dict | None
    created_at: datetime


class TransferHistoryListResponse(BaseModel):
    rows: list[TransferHistoryResponse]


class AllowedActions(BaseModel):
    can_approve: bool
    can_prepare: bool
    can_deliver: bool
    can_cancel_item: bool
    can_cancel_transfer: bool


class TransferSummaryResponse(BaseModel):
    id: str
    code: str
    title: str
    priority: str
    status: str
    requesting_department: DepartmentRef
    supplying_department: DepartmentRef
    requested_by_id: str
    requested_at: datetime
    approved_at: datetime | None
    prepared_at: datetime | None
    delivered_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime | None


class TransferResponse(TransferSummaryResponse):
    request_reason: str | None
    notes: str | None
    cancel_reason: str | None
    items: list[TransferItemResponse]
    history: list[TransferHistoryResponse] = []
    allowed_actions: AllowedActions


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TransferListResponse(BaseModel):
    rows: list[TransferSummaryResponse]
    pagination: PaginationMeta


class TransferStatsResponse(BaseModel):
    total: int
    pending: int
    approved: int
    prepared: int
    completed: int
    cancelled: int

