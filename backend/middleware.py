from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, check_rbac
from models import UserRole

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)
    if not check_rbac(user.get("role"), required_role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes (ROLE_ADMIN or ROLE_OWNER)."""
    return await require_role(request, UserRole.ROLE_ADMIN)

async def subscriber_route_guard(request: Request) -> dict:
    """Guard for subscriber routes - the token must carry a subscriber id."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_SUBSCRIBER.value or user.get("subscriber_id") is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Subscriber access required"
        )
    return user

async def subscriber_or_admin_guard(request: Request, subscriber_id: int) -> dict:
    """Subscribers may read their own data; admins may read anyone's."""
    user = await require_auth(request)
    if check_rbac(user.get("role"), UserRole.ROLE_ADMIN):
        return user
    if user.get("subscriber_id") != subscriber_id:
        logger.info(f"ROUTE_GUARD_DENIED path={request.url.path} subscriber_id={user.get('subscriber_id')}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user
