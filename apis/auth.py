import re
import uuid
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from core.auth import (
    authenticate_user,
    create_access_token,
    get_current_user,
    ACCESS_TOKEN_EXPIRE_MINUTES,
    pwd_context,
)
from core.db import DB
from core.errors import ValidationError
from core.models.user import User as DBUser
from core.invite_service import bind_invite_code, new_invite_code
from core.log import get_logger
from core.events import log_event, E
from .base import success_response, error_response

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["认证"])

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,32}$")


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=32)
    password: str = Field(..., min_length=6, max_length=64)
    email: str = Field(default="", max_length=100)
    invite_code: str = Field(default="", max_length=32)


def _issue_token(username: str) -> dict:
    access_token = create_access_token(
        data={"sub": username}, expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }


def _login(form_data: OAuth2PasswordRequestForm) -> dict:
    session = DB.get_session()
    try:
        user = authenticate_user(session, form_data.username, form_data.password)
        if not user:
            log_event(logger, E.AUTH_LOGIN_FAIL, level="warning", username=form_data.username)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response(code=40101, message="用户名或密码错误"),
            )
        log_event(logger, E.AUTH_LOGIN_SUCCESS, username=user.username)
        return _issue_token(user.username)
    finally:
        session.close()


@router.post("/token", summary="获取Token")
async def get_token(form_data: OAuth2PasswordRequestForm = Depends()):
    return _login(form_data)


@router.post("/login", summary="用户登录")
async def login(form_data: OAuth2PasswordRequestForm = Depends()):
    return success_response(_login(form_data))


@router.post("/register", summary="用户注册")
async def register(payload: RegisterRequest):
    username = payload.username.strip()
    if not USERNAME_PATTERN.match(username):
        raise ValidationError("用户名只能包含字母、数字和下划线，长度 3-32")

    session = DB.get_session()
    try:
        exists = session.query(DBUser).filter(DBUser.username == username).first()
        if exists:
            raise ValidationError("用户名已注册")
        now = datetime.now()
        user = DBUser(
            id=str(uuid.uuid4()),
            username=username,
            email=payload.email.strip(),
            password_hash=pwd_context.hash(payload.password),
            role="user",
            is_active=True,
            balance_cents=0,
            commission_cents=0,
            transfer_enable=0,
            group_id=0,
            invite_code=new_invite_code(session),
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        bind_invite_code(session, user, payload.invite_code)
        session.commit()
        log_event(logger, E.AUTH_REGISTER, username=username, invited_by=user.invited_by or "")
        return success_response({"username": username, "invite_code": user.invite_code}, message="注册成功")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@router.get("/me", summary="获取当前登录用户")
async def me(current_user: dict = Depends(get_current_user)):
    return success_response(current_user)


@router.post("/refresh", summary="刷新Token")
async def refresh_token(current_user: dict = Depends(get_current_user)):
    return success_response(_issue_token(current_user["username"]))
