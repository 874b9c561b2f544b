"""FastAPI dependencies for tenant context.

Session and permission resolution live upstream of this service. The
gateway forwards the resolved tenant and user as X-Org-ID / X-User-ID
headers; every reconciliation endpoint derives its org scope from them
and never from request bodies.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .database import get_db
from .models.org import Org


@dataclass(frozen=True)
class TenantContext:
    """Resolved caller: organization and (optional) acting user."""
    org_id: UUID
    user_id: Optional[UUID] = None


def _parse_uuid(value: str, header: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid {header} header",
        )


def get_tenant_context(
    x_org_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> TenantContext:
    """Tenant context from gateway headers.

    Raises:
        HTTPException 401: If X-Org-ID is missing or malformed
    """
    if not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Org-ID header",
        )
    org_id = _parse_uuid(x_org_id, "X-Org-ID")
    user_id = _parse_uuid(x_user_id, "X-User-ID") if x_user_id else None
    return TenantContext(org_id=org_id, user_id=user_id)


def validate_org_exists(
    tenant: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> TenantContext:
    """Tenant context whose organization exists.

    Raises:
        HTTPException 404: If the organization does not exist
    """
    org = db.query(Org.id).filter(Org.id == tenant.org_id).first()
    if not org:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Organization {tenant.org_id} not found",
        )
    return tenant
