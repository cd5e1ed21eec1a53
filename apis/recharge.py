from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from core.auth import get_current_user, require_admin
from core.db import DB
from core.errors import ValidationError
from core.billing_service import create_recharge_order, pay_order
from core.payment import EXTERNAL_METHODS
from core.recharge_service import (
    create_recharge_codes,
    delete_recharge_code,
    list_recharge_codes,
    redeem_recharge_code,
)
from .base import client_ip, success_response

router = APIRouter(prefix="/recharge", tags=["充值"])


class RedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class OnlineRechargeRequest(BaseModel):
    amount: str = Field(..., max_length=20, description="充值金额（元）")
    method: str = Field(..., max_length=32)


class CreateCodesRequest(BaseModel):
    amount: str = Field(..., max_length=20, description="面值（元）")
    count: int = Field(default=1, ge=1, le=1000)
    remark: str = Field(default="", max_length=200)


@router.post("/redeem", summary="兑换充值卡密")
async def redeem(payload: RedeemRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        result = redeem_recharge_code(session, current_user["username"], payload.code)
        return success_response(result, message="充值成功")
    finally:
        session.close()


@router.post("/online", summary="在线充值")
async def online_recharge(payload: OnlineRechargeRequest, request: Request, current_user: dict = Depends(get_current_user)):
    method = payload.method.strip().lower()
    if method not in EXTERNAL_METHODS:
        raise ValidationError("在线充值仅支持外部支付方式")
    session = DB.get_session()
    try:
        order = create_recharge_order(session, current_user["username"], payload.amount)
        result = pay_order(
            session,
            order_no=order.order_no,
            owner_id=current_user["username"],
            method=method,
            client_ip=client_ip(request),
        )
        return success_response(result, message="请前往支付")
    finally:
        session.close()


@router.get("/codes", summary="管理员获取卡密列表")
async def admin_list_codes(
    used: Optional[bool] = Query(None),
    search: str = Query("", max_length=64),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(list_recharge_codes(session, used=used, page=page, page_size=page_size, search=search))
    finally:
        session.close()


@router.post("/codes", summary="批量生成卡密")
async def admin_create_codes(payload: CreateCodesRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        codes = create_recharge_codes(
            session,
            payload.amount,
            count=payload.count,
            remark=payload.remark,
            created_by=current_user["username"],
        )
        return success_response({"count": len(codes), "codes": codes}, message="卡密已生成")
    finally:
        session.close()


@router.delete("/codes/{code_id}", summary="删除未使用的卡密")
async def admin_delete_code(code_id: int, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        delete_recharge_code(session, code_id)
        return success_response(message="卡密已删除")
    finally:
        session.close()
