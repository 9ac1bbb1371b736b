from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.persistence.db import get_session


_ROLES = {"user", "admin"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity is asserted by the gateway in front of the API.
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(
    user_id: str | None = Header(default=None, alias="X-User-Id", max_length=128),
    role: str | None = Header(default=None, alias="X-Role", max_length=32),
) -> Principal:
    if not user_id or not user_id.strip():
        raise _auth_error("X-User-Id header is required")
    normalized = (role or "user").strip().lower()
    if normalized not in _ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": f"Unknown role: {role}"},
        )
    return Principal(user_id=user_id.strip(), role=normalized)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Admin access required"},
        )
    return principal
