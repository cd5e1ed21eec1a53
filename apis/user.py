from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from core.auth import get_current_user, require_admin
from core.db import DB
from core.errors import NotFoundError
from core.models.user import User as DBUser
from core.billing_service import get_user_billing_overview
from core.ledger_service import adjust_balance, list_balance_logs
from .base import success_response

router = APIRouter(prefix="/user", tags=["用户管理"])


class AdjustBalanceRequest(BaseModel):
    change_cents: int = Field(..., description="正数入账，负数扣款，单位：分")
    remark: str = Field(default="", max_length=64)


@router.get("/profile", summary="获取用户信息与资产概览")
async def get_profile(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = session.query(DBUser).filter(DBUser.username == current_user["username"]).first()
        if not user:
            raise NotFoundError("用户不存在")
        return success_response({
            "username": user.username,
            "email": user.email or "",
            "role": user.role,
            "is_active": bool(user.is_active),
            "invite_code": user.invite_code or "",
            "commission_cents": int(user.commission_cents or 0),
            **get_user_billing_overview(session, user),
        })
    finally:
        session.close()


@router.get("/balance/logs", summary="获取余额变动记录")
async def get_balance_logs(
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(list_balance_logs(session, current_user["username"], limit=limit))
    finally:
        session.close()


@router.post("/{username}/balance", summary="管理员调整用户余额")
async def admin_adjust_balance(
    username: str,
    payload: AdjustBalanceRequest,
    current_user: dict = Depends(get_current_user),
):
    require_admin(current_user)
    session = DB.get_session()
    try:
        remark = payload.remark or f"by {current_user['username']}"
        balance = adjust_balance(session, username, payload.change_cents, remark=remark)
        return success_response({"username": username, "balance_cents": balance}, message="调账成功")
    finally:
        session.close()
