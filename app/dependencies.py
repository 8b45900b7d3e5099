"""
WMS Billing Core - FastAPI Dependencies

Request-scoped tenant and actor identification. Authentication happens
upstream; the gateway forwards the resolved tenant and user as headers.
"""

import uuid
from typing import Optional

from fastapi import Header, HTTPException, status


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
) -> uuid.UUID:
    """
    Tenant for the current request.

    Raises:
        HTTPException: 400 if the header is missing or not a UUID
    """
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return uuid.UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid X-Tenant-ID: {x_tenant_id}",
        )


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> Optional[uuid.UUID]:
    """Acting user, recorded on audit fields when present."""
    if not x_user_id:
        return None
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid X-User-ID: {x_user_id}",
        )
