"""
认证工具：校验上游（Supabase）签发的 JWT，解析出用户 ID
"""
from datetime import datetime, timedelta
from typing import Optional
import logging
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from hootool_credits.config import get_settings

settings = get_settings()
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)

SERVICE_ROLE = "service_role"


def create_access_token(
    user_id: str,
    expires_delta: Optional[timedelta] = None,
    role: str = "authenticated",
) -> str:
    """签发与 Supabase 同格式的 JWT（本地调试和测试使用）"""
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=1))
    to_encode = {
        "sub": user_id,
        "aud": settings.supabase_jwt_audience,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(
        to_encode, settings.supabase_jwt_secret, algorithm=settings.jwt_algorithm
    )


def decode_token(token: str) -> dict:
    """解码 JWT Token"""
    try:
        payload = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.supabase_jwt_audience,
        )
        return payload
    except JWTError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证令牌",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """获取当前登录用户 ID"""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未授权, 请先登录",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")

    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证令牌",
        )
    return user_id


async def require_service_role(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """仅允许支付网关 / 内部计费服务（service_role 令牌）调用"""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未授权, 请先登录",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    if payload.get("role") != SERVICE_ROLE:
        logger.warning("Rejected non-service caller on billing route sub=%s", payload.get("sub"))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="仅限内部计费服务调用",
        )
    return payload
