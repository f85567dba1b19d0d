from pydantic import BaseModel


class ApiErrorResponse(BaseModel):
    code: str
    message: str
    details: dict | list | str | None = None
    trace_id: str

    model_config = {
        "json_schema_extra": {
            "example": {
                "code": "INVALID_TRANSITION",
                "message": "Operation not allowed in the current status",
                "details": {"item_id": "6a0f...", "status": "APPROVED", "target_status": "APPROVED"},
                "trace_id": "2b1c3d4e-5f60-4a7b-8c9d-0e1f2a3b4c5d",
            }
        }
    }
