from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext

from core.config import cfg, get_int, API_BASE
from core.db import DB
from core.models.user import User as DBUser
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

SECRET_KEY = str(cfg.get("secret", "nyanpass-dev-secret"))
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = get_int("token_expire_minutes", 60 * 24 * 7)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{API_BASE}/auth/token")


def authenticate_user(session, username: str, password: str) -> Optional[DBUser]:
    user = session.query(DBUser).filter(DBUser.username == str(username or "").strip()).first()
    if not user or not user.is_active:
        return None
    if not user.verify_password(password):
        return None
    return user


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    payload = dict(data)
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload["exp"] = expire
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Dict:
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(token: str = Depends(oauth2_scheme)) -> Dict:
    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        log_event(logger, E.AUTH_TOKEN_EXPIRE, level="warning")
        raise _unauthorized("登录已过期，请重新登录")
    except jwt.PyJWTError:
        raise _unauthorized("无效的登录凭证")

    username = str(payload.get("sub") or "")
    session = DB.get_session()
    try:
        user = session.query(DBUser).filter(DBUser.username == username).first()
        if not user or not user.is_active:
            raise _unauthorized("用户不存在或已禁用")
        return {"id": user.id, "username": user.username, "role": user.role or "user"}
    finally:
        session.close()


def require_admin(current_user: Dict) -> None:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权限执行此操作")
