"""
Dependency helpers for claim routes.

Identity is resolved upstream. The identity gateway forwards the caller
as X-User-Id / X-User-Role headers; this module turns them into a
Principal and gates admin routes.
"""

from uuid import UUID

from fastapi import HTTPException, Request

from claimflow.core import ClaimService
from claimflow.schemas import Principal, UserRole


def get_service(request: Request) -> ClaimService:
    """Get the claim service from app state."""
    return request.app.state.claims


def get_principal(request: Request) -> Principal:
    """The authenticated caller, or 401."""
    raw_id = request.headers.get("X-User-Id")
    if not raw_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = UUID(raw_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")

    raw_role = request.headers.get("X-User-Role", UserRole.USER.value).upper()
    try:
        role = UserRole(raw_role)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {raw_role}")

    return Principal(user_id=user_id, role=role)


def require_admin(request: Request) -> Principal:
    """Require admin role."""
    principal = get_principal(request)
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return principal


def parse_id(value: str, what: str = "claim") -> UUID:
    """Parse a path id, 400 if it is not a UUID."""
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {what} ID")
