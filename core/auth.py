"""
core/auth.py — 终端用户身份

登录与令牌签发由用户服务负责，这里只校验其签发的访问令牌并取出用户信息。
与服务间的 M2M 凭证（core/m2m.py）相互独立。
"""

from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from apis.base import error_response
from core.config import API_BASE, cfg
from core.log import get_logger

logger = get_logger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{API_BASE}/auth/token", auto_error=False)


def _unauthorized(message: str = "invalid or missing access token") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_response(code=40101, message=message),
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> Optional[Dict]:
    secret = str(cfg.get("auth.secret_key", "") or "")
    if not token or not secret:
        return None
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[str(cfg.get("auth.algorithm", "HS256"))],
            options={"require": ["sub", "exp"]},
        )
    except jwt.PyJWTError as e:
        logger.warning("访问令牌校验失败: %s", type(e).__name__)
        return None
    return payload


def user_from_claims(payload: Dict) -> Dict:
    return {
        "id": str(payload.get("sub") or ""),
        "username": str(payload.get("username") or payload.get("sub") or ""),
        "name": str(payload.get("name") or ""),
        "email": str(payload.get("email") or ""),
        "phone": str(payload.get("phone") or ""),
        "role": str(payload.get("role") or "user"),
    }


async def get_current_user(token: str = Depends(oauth2_scheme)) -> Dict:
    payload = decode_access_token(token)
    if not payload:
        raise _unauthorized()
    user = user_from_claims(payload)
    if not user["id"]:
        raise _unauthorized()
    return user
