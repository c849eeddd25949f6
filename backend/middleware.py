from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
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
    user_role = user.get("role")

    role_hierarchy = {
        UserRole.ROLE_ADMIN.value: 2,
        UserRole.ROLE_USER.value: 1
    }

    if role_hierarchy.get(user_role, 0) < role_hierarchy.get(required_role.value, 0):
        logger.warning(f"Admin route denied for subject={user.get('sub')} role={user_role} path={request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin/operator routes."""
    return await require_role(request, UserRole.ROLE_ADMIN)
