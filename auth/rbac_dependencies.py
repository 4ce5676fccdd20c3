"""
Authentication and permission dependencies for FastAPI.

Tokens are minted by the main auth service; this module only verifies them.
Claims used:
  - sub: user id (also the ABAC subject id)
  - permissions: list of permission strings ("*" grants everything)
  - is_super_admin: bypasses ABAC checks
"""

from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request
from loguru import logger

# ==================== TOKEN VERIFICATION ====================


def verify_token(token: str, secret: str, algorithm: str = "HS256") -> Optional[dict]:
    """Verify JWT token and return payload, or None if invalid/expired"""
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
        logger.debug(f"[TOKEN_VERIFY] Token verified successfully for user: {payload.get('sub')}")
        return payload
    except jwt.ExpiredSignatureError:
        logger.warning("[TOKEN_VERIFY] Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"[TOKEN_VERIFY] Invalid token: {e}")
        return None


# ==================== DEPENDENCY FUNCTIONS ====================

async def verify_jwt_token(request: Request, authorization: str = Header(None)) -> dict:
    """
    Dependency: Verify JWT token and return payload.
    """
    if not authorization or "Bearer " not in authorization:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    token = authorization.replace("Bearer ", "").strip()
    config = request.app.state.abac.config

    payload = verify_token(token, config.jwt_secret_key, config.jwt_algorithm)

    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return payload


def has_permission(user: dict, permission: str) -> bool:
    if user.get("is_super_admin"):
        return True
    permissions = user.get("permissions") or []
    return "*" in permissions or permission in permissions


def require_permission(required_permission: str):
    """
    Dependency factory: Require specific permission.
    """
    async def _require_permission(user: dict = Depends(verify_jwt_token)) -> dict:
        if not has_permission(user, required_permission):
            logger.warning(f"User {user['sub']} denied permission: {required_permission}")
            raise HTTPException(
                status_code=403,
                detail=f"Permission '{required_permission}' required"
            )

        return user

    return _require_permission


# ==================== COMMONLY USED DEPENDENCIES ====================

async def get_current_user(user: dict = Depends(verify_jwt_token)) -> dict:
    """
    Dependency: Any authenticated user.
    """
    return user


require_abac_read = require_permission("abac.read")
require_abac_manage = require_permission("abac.manage")
