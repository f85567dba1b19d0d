import uuid

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials
from jose import JWTError
from pydantic import ValidationError

from app.medstock.core.context import Actor, RequestContext, build_actor, build_request_context
from app.medstock.core.error_catalog import AppError, ErrorCatalog
from app.medstock.core.security import TokenData, bearer_scheme, decode_token


def get_current_token_data(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> TokenData:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AppError(ErrorCatalog.INVALID_TOKEN)
    try:
        payload = decode_token(credentials.credentials)
        return TokenData(**payload)
    except (JWTError, ValidationError, TypeError) as exc:
        raise AppError(ErrorCatalog.INVALID_TOKEN) from exc


def require_request_context(
    request: Request,
    token_data: TokenData = Depends(get_current_token_data),
) -> RequestContext:
    context = build_request_context(
        user_id=token_data.sub,
        organization_id=token_data.organization_id,
        role=token_data.role,
        trace_id=getattr(request.state, "trace_id", ""),
    )
    request.state.context = context
    return context


def require_actor(
    token_data: TokenData = Depends(get_current_token_data),
    _context: RequestContext = Depends(require_request_context),
) -> Actor:
    try:
        uuid.UUID(token_data.organization_id)
    except ValueError as exc:
        raise AppError(ErrorCatalog.INVALID_TOKEN, details={"message": "organization_id must be a UUID"}) from exc
    return build_actor(
        user_id=token_data.sub,
        organization_id=token_data.organization_id,
        role=token_data.role,
        name=token_data.name,
        department_ids=token_data.department_ids,
    )


__all__ = [
    "get_current_token_data",
    "require_request_context",
    "require_actor",
]
