"""
Auth endpoints: admin and employee login, token refresh, account creation.
"""

from __future__ import annotations

import logging

from fastapi import (APIRouter, Cookie, Depends, HTTPException, Request,
                     Response, status)
from fastapi.security import OAuth2PasswordRequestForm
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.api.v1.deps import (get_current_principal, get_db,
                                    require_admin)
from timekeeper.core.config import settings
from timekeeper.core.exceptions import NotFoundError
from timekeeper.core.security import (create_access_token,
                                      create_refresh_token,
                                      decode_refresh_token, get_password_hash,
                                      verify_password)
from timekeeper.models.employee import Employee
from timekeeper.models.user import User
from timekeeper.schemas.timer import MessageResponse
from timekeeper.schemas.token import EmployeeLogin, RefreshRequest, Token
from timekeeper.schemas.user import (EmployeeCreate, EmployeeRead, MeResponse,
                                     UserCreate, UserRead)
from timekeeper.services.identity import Actor, IdentityResolver, Principal

# Rate limiter: keyed by client IP
limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def _issue_tokens(response: Response, subject: int, kind: str) -> Token:
    """Create an access/refresh pair and set them as HttpOnly cookies."""
    access_token = create_access_token(subject, kind=kind)
    refresh_token = create_refresh_token(subject, kind=kind)

    response.set_cookie(
        key="access_token",
        value=f"Bearer {access_token}",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    response.set_cookie(
        key="refresh_token",
        value=refresh_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
    )
    return Token(access_token=access_token, refresh_token=refresh_token)


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Incorrect email or password",
        headers={"WWW-Authenticate": "Bearer"},
    )


@router.post("/login", response_model=Token)
@limiter.limit("5/minute")
async def login_for_access_token(
    request: Request,
    response: Response,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
) -> Token:
    """Admin login (OAuth2 password flow). Tokens are also set as cookies."""
    result = await db.execute(
        select(User).where(User.email == form_data.username.lower().strip())
    )
    user = result.scalar_one_or_none()

    if user is None or user.role != "admin" or not verify_password(form_data.password, user.hashed_password):
        logger.warning("Failed admin login for %s", form_data.username)
        raise _bad_credentials()
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    return _issue_tokens(response, user.id, "admin")


@router.post("/employee-login", response_model=Token)
@limiter.limit("5/minute")
async def employee_login(
    request: Request,
    response: Response,
    body: EmployeeLogin,
    db: AsyncSession = Depends(get_db),
) -> Token:
    result = await db.execute(
        select(Employee).where(Employee.email == body.email.lower().strip())
    )
    employee = result.scalar_one_or_none()

    if employee is None or not verify_password(body.password, employee.hashed_password):
        logger.warning("Failed employee login for %s", body.email)
        raise _bad_credentials()
    if not employee.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Employee account is inactive",
        )

    return _issue_tokens(response, employee.id, "employee")


@router.post("/refresh", response_model=Token)
@limiter.limit("10/minute")
async def refresh_access_token_endpoint(
    response: Response,
    request: Request,
    body: RefreshRequest | None = None,
    refresh_token_cookie: str | None = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
) -> Token:
    # Priority: Body > Cookie
    token_str = None
    if body and body.refresh_token:
        token_str = body.refresh_token
    elif refresh_token_cookie:
        token_str = refresh_token_cookie

    if not token_str:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token missing",
        )

    payload = decode_refresh_token(token_str)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
        )

    kind = payload["kind"]
    model = Employee if kind == "employee" else User
    account = await db.get(model, int(payload["sub"]))
    if account is None or not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )

    return _issue_tokens(response, account.id, kind)


@router.post("/logout", response_model=MessageResponse)
async def logout(response: Response) -> MessageResponse:
    """Clear auth cookies and end the session."""
    response.delete_cookie("access_token")
    response.delete_cookie("refresh_token")
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=MeResponse)
async def read_current_principal(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> MeResponse:
    """Profile of the logged-in account and the user id it punches as."""
    model = Employee if principal.kind == "employee" else User
    account = await db.get(model, principal.id)
    name = account.name if principal.kind == "employee" else account.full_name
    try:
        user_id: int | None = await IdentityResolver(db).resolve(principal)
    except NotFoundError:
        user_id = None
    return MeResponse(
        id=principal.id,
        email=principal.email,
        name=name,
        kind=principal.kind,
        user_id=user_id,
    )


# ── Account management (admin-only) ───────────────────────────────
@router.post("/users", response_model=UserRead, status_code=201)
async def create_user(
    body: UserCreate,
    db: AsyncSession = Depends(get_db),
    _admin: Actor = Depends(require_admin),
) -> User:
    """Create a new user account (admin only)."""
    existing = await db.execute(select(User).where(User.email == body.email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=body.email,
        hashed_password=get_password_hash(body.password),
        full_name=body.full_name,
        role=body.role,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("User %s created with role %s", user.email, user.role)
    return user


@router.post("/employees", response_model=EmployeeRead, status_code=201)
async def create_employee(
    body: EmployeeCreate,
    db: AsyncSession = Depends(get_db),
    _admin: Actor = Depends(require_admin),
) -> Employee:
    """Create an employee login and the user row its attendance is keyed by."""
    existing = await db.execute(select(Employee).where(Employee.email == body.email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    employee = Employee(
        name=body.name,
        email=body.email,
        hashed_password=get_password_hash(body.password),
        department=body.department,
        position=body.position,
    )
    db.add(employee)

    user_row = await db.execute(select(User).where(User.email == body.email))
    if user_row.scalar_one_or_none() is None:
        db.add(User(email=body.email, full_name=body.name, role="employee"))

    await db.commit()
    await db.refresh(employee)
    logger.info("Employee %s created", employee.email)
    return employee
