from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional

from fastapi.security import HTTPBearer
from jose import jwt
from pydantic import BaseModel

from app.medstock.core.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """Claims of the identity token issued by the external auth layer."""

    sub: str
    organization_id: str
    role: Literal["MEMBER", "ADMIN", "OWNER"]
    name: str | None = None
    department_ids: list[str] = []


def create_access_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


def create_actor_token(
    *,
    user_id,
    organization_id,
    role: str,
    department_ids=(),
    name: str | None = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    return create_access_token(
        {
            "sub": str(user_id),
            "organization_id": str(organization_id),
            "role": role,
            "name": name,
            "department_ids": [str(value) for value in department_ids],
        },
        expires_delta=expires_delta,
    )
