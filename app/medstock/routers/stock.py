from fastapi import APIRouter, Depends

from app.medstock.core.context import Actor
from app.medstock.core.deps import require_actor
from app.medstock.db.session import get_db
from app.medstock.schemas.stock import StockBatchListResponse, StockBatchResponse
from app.medstock.services.transfer_query import TransferQueryService

router = APIRouter()


@router.get(
    "/medstock/departments/{department_id}/products/{product_id}/batches",
    response_model=StockBatchListResponse,
)
def list_allocation_batches(
    department_id: str,
    product_id: str,
    actor: Actor = Depends(require_actor),
    db=Depends(get_db),
):
    views = TransferQueryService(db).get_batches_for_allocation(actor, department_id, product_id)
    return StockBatchListResponse(
        department_id=department_id,
        product_id=product_id,
        rows=[
            StockBatchResponse(
                id=str(view.batch.id),
                lot_number=view.batch.lot_number,
                expiry_date=view.batch.expiry_date,
                manufacture_date=view.batch.manufacture_date,
                total_quantity=view.batch.total_quantity,
                available_quantity=view.batch.available_quantity,
                reserved_quantity=view.batch.reserved_quantity,
                status=view.batch.status,
                expiring_soon=view.expiring_soon,
                expired=view.expired,
            )
            for view in views
        ],
    )
