from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from core.auth import get_current_user, require_admin
from core.db import DB
from core.errors import ValidationError
from core.coupon_service import (
    coupon_to_dict,
    create_coupon,
    create_coupons_batch,
    delete_coupon,
    list_coupons,
    update_coupon,
    verify_coupon,
)
from core.ledger_service import parse_yuan
from core.plan_service import get_purchasable_plan
from .base import success_response

router = APIRouter(prefix="/coupons", tags=["优惠券"])


class VerifyCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    plan_id: Optional[int] = None
    amount: str = Field(default="", max_length=20, description="无套餐时按该金额（元）计算")


class CouponRequest(BaseModel):
    code: str = Field(default="", max_length=64)
    coupon_type: str = Field(default="amount", pattern="^(amount|percent|days)$")
    value: int = Field(..., gt=0, description="amount: 分；percent: 1-100；days: 天数")
    min_amount_cents: int = Field(default=0, ge=0)
    max_discount_cents: int = Field(default=0, ge=0)
    limit_per_user: int = Field(default=1, ge=0)
    total_limit: int = Field(default=0, ge=0)
    plan_ids: List[int] = Field(default_factory=list)
    start_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    is_active: bool = True


class CouponBatchRequest(CouponRequest):
    count: int = Field(..., ge=1, le=500)
    prefix: str = Field(default="", max_length=8)


class CouponUpdateRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=64)
    coupon_type: Optional[str] = Field(default=None, pattern="^(amount|percent|days)$")
    value: Optional[int] = Field(default=None, gt=0)
    min_amount_cents: Optional[int] = Field(default=None, ge=0)
    max_discount_cents: Optional[int] = Field(default=None, ge=0)
    limit_per_user: Optional[int] = Field(default=None, ge=0)
    total_limit: Optional[int] = Field(default=None, ge=0)
    plan_ids: Optional[List[int]] = None
    start_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    is_active: Optional[bool] = None


@router.post("/verify", summary="校验优惠券（不占用次数）")
async def verify(payload: VerifyCouponRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        if payload.plan_id is not None:
            amount_cents = int(get_purchasable_plan(session, payload.plan_id).price_cents or 0)
        elif payload.amount:
            amount_cents = parse_yuan(payload.amount)
        else:
            raise ValidationError("请提供套餐或订单金额")
        result = verify_coupon(session, payload.code, current_user["username"], amount_cents, plan_id=payload.plan_id)
        return success_response(result)
    finally:
        session.close()


@router.get("", summary="管理员获取优惠券列表")
async def admin_list(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    search: str = Query("", max_length=64),
    current_user: dict = Depends(get_current_user),
):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(list_coupons(session, page=page, page_size=page_size, search=search))
    finally:
        session.close()


@router.post("", summary="创建优惠券")
async def admin_create(payload: CouponRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        coupon = create_coupon(session, **payload.model_dump())
        return success_response(coupon_to_dict(coupon), message="优惠券已创建")
    finally:
        session.close()


@router.post("/batch", summary="批量生成优惠券")
async def admin_batch(payload: CouponBatchRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    data = payload.model_dump()
    count = data.pop("count")
    prefix = data.pop("prefix")
    session = DB.get_session()
    try:
        codes = create_coupons_batch(session, count, prefix=prefix, **data)
        return success_response({"count": len(codes), "codes": codes}, message="优惠券已生成")
    finally:
        session.close()


@router.put("/{coupon_id}", summary="更新优惠券")
async def admin_update(coupon_id: int, payload: CouponUpdateRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        coupon = update_coupon(session, coupon_id, **payload.model_dump(exclude_none=True))
        return success_response(coupon_to_dict(coupon), message="优惠券已更新")
    finally:
        session.close()


@router.delete("/{coupon_id}", summary="删除优惠券")
async def admin_delete(coupon_id: int, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        delete_coupon(session, coupon_id)
        return success_response(message="优惠券已删除")
    finally:
        session.close()
