from __future__ import annotations

from datetime import date

from pydantic import BaseModel


class StockBatchResponse(BaseModel):
    id: str
    lot_number: str
    expiry_date: date | None
    manufacture_date: date | None
    total_quantity: int
    available_quantity: int
    reserved_quantity: int
    status: str
    expiring_soon: bool
    expired: bool


class StockBatchListResponse(BaseModel):
    department_id: str
    product_id: str
    rows: list[StockBatchResponse]
