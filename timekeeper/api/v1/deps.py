"""
FastAPI dependencies: database session, auth guards and the resolved actor.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.core.exceptions import NotFoundError
from timekeeper.core.security import decode_access_token
from timekeeper.db.session import async_session_factory
from timekeeper.models.employee import Employee
from timekeeper.models.user import User
from timekeeper.services.audit import RequestMetadata
from timekeeper.services.identity import Actor, IdentityResolver, Principal

# auto_error=False so we can fall back to the cookie when the header is missing
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


# ── Database session ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


# ── Auth dependencies ───────────────────────────────────────────────
def _credentials_exc() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_principal(
    token: Optional[str] = Depends(oauth2_scheme),
    access_token: Optional[str] = Cookie(default=None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Decode the JWT from header or cookie and load the account it names."""
    # Priority: Header > Cookie ("Bearer <token>" or bare token)
    final_token = token
    if not final_token and access_token:
        final_token = access_token.removeprefix("Bearer ")
    if not final_token:
        raise _credentials_exc()

    payload = decode_access_token(final_token)
    if payload is None or payload.get("sub") is None:
        raise _credentials_exc()

    try:
        subject = int(payload["sub"])
    except ValueError:
        raise _credentials_exc() from None

    kind = payload["kind"]
    if kind == "employee":
        employee = await db.get(Employee, subject)
        if employee is None:
            raise _credentials_exc()
        if not employee.is_active:
            raise HTTPException(status_code=400, detail="Inactive employee account")
        return Principal(id=employee.id, email=employee.email, kind="employee")

    user = await db.get(User, subject)
    if user is None or user.role != "admin":
        raise _credentials_exc()
    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user account")
    return Principal(id=user.id, email=user.email, kind="admin")


async def get_actor(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """Resolve the principal to the internal user id once per request."""
    return await IdentityResolver(db).actor_for(principal)


async def get_optional_actor(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Actor | None:
    """Like ``get_actor`` but ``None`` when the employee has no user row."""
    try:
        return await IdentityResolver(db).actor_for(principal)
    except NotFoundError:
        return None


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Actor:
    """Only allow admin accounts to proceed."""
    if principal.kind != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return Actor(user_id=principal.id, is_admin=True)


def get_request_meta(request: Request) -> RequestMetadata:
    return RequestMetadata.from_request(request)
