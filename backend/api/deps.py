"""
MyInventory API Dependencies

Dependency injection for DB sessions, auth, tenant context and plan gating.
"""

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.security import is_admin, plan_has_feature
from db.session import AsyncSessionLocal

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_ORG_ID = "00000000-0000-0000-0000-000000000001"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@myinventory.app",
            "org_id": DEV_ORG_ID,
            "role": "admin_rede",
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


async def get_tenant_db(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
) -> AsyncSession:
    """
    Get a DB session with tenant context set.
    Sets PostgreSQL RLS variable for row-level security.
    """
    org_id = user.get("org_id")
    if not org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organization context",
        )
    await db.execute(
        text("SELECT set_config('app.current_org_id', :oid, true)"),
        {"oid": str(org_id)},
    )
    return db


async def get_org_id(user: dict = Depends(get_current_user)) -> uuid.UUID:
    """Organization of the current user as a UUID."""
    try:
        return uuid.UUID(str(user.get("org_id")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organization context",
        )


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """Only network administrators may run recomputations and change thresholds."""
    if not is_admin(user.get("role")):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return user


def require_feature(feature: str):
    """
    Build a dependency that rejects organizations whose plan lacks `feature`.

    Usage:
        @router.get("/", dependencies=[Depends(require_feature("has_risk_scoring"))])
    """

    async def _check(
        db: AsyncSession = Depends(get_tenant_db),
        user: dict = Depends(get_current_user),
    ) -> None:
        from db.models import Organization

        result = await db.execute(select(Organization.plan).where(Organization.org_id == user["org_id"]))
        plan = result.scalar_one_or_none()
        if not plan_has_feature(plan, feature):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Your plan does not include this feature ({feature}). Upgrade to professional.",
            )

    return _check
