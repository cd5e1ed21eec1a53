from typing import Dict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from core.auth import get_current_user, require_admin
from core.db import DB
from core.errors import BillingError
from core.billing_service import (
    CHANNEL_MANUAL,
    cancel_order,
    create_order,
    delete_order,
    get_order_for_owner,
    handle_payment_notify,
    list_orders,
    mark_order_paid,
    order_to_dict,
    pay_order,
    refund_order,
    sweep_expired_orders,
)
from core.payment import METHOD_STRIPE
from .base import client_ip, success_response

router = APIRouter(prefix="/billing", tags=["订单支付"])


class CreateOrderRequest(BaseModel):
    plan_id: int = Field(..., ge=1)
    coupon_code: str = Field(default="", max_length=64)
    note: str = Field(default="", max_length=500)


class PayOrderRequest(BaseModel):
    order_no: str = Field(..., min_length=1, max_length=64)
    method: str = Field(..., max_length=32)


class CancelOrderRequest(BaseModel):
    reason: str = Field(default="", max_length=200)


class MarkPaidRequest(BaseModel):
    channel: str = Field(default=CHANNEL_MANUAL, max_length=32)
    trade_no: str = Field(default="", max_length=120)


class RefundRequest(BaseModel):
    reason: str = Field(default="", max_length=200)


@router.post("/orders", summary="创建套餐订单")
async def create_billing_order(payload: CreateOrderRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        order = create_order(
            session,
            owner_id=current_user["username"],
            plan_id=payload.plan_id,
            coupon_code=payload.coupon_code,
            note=payload.note,
        )
        return success_response(order_to_dict(order), message="订单创建成功")
    finally:
        session.close()


@router.get("/orders", summary="获取当前用户订单列表")
async def get_my_orders(
    status: str = Query("", max_length=32),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(
            list_orders(session, owner_id=current_user["username"], status=status, page=page, page_size=page_size)
        )
    finally:
        session.close()


@router.get("/orders/admin", summary="管理员获取全量订单")
async def get_all_orders(
    owner_id: str = Query("", max_length=50),
    status: str = Query("", max_length=32),
    order_type: str = Query("", max_length=20),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(
            list_orders(session, owner_id=owner_id, status=status, order_type=order_type, page=page, page_size=page_size)
        )
    finally:
        session.close()


@router.post("/orders/sweep", summary="取消超时未支付订单")
async def sweep_orders(current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(sweep_expired_orders(session, limit=500))
    finally:
        session.close()


@router.get("/orders/{order_no}", summary="获取订单详情")
async def get_order(order_no: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        order = get_order_for_owner(session, order_no, current_user["username"], is_admin=current_user.get("role") == "admin")
        return success_response(order_to_dict(order))
    finally:
        session.close()


@router.post("/orders/{order_no}/cancel", summary="取消待支付订单")
async def cancel_billing_order(order_no: str, payload: CancelOrderRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        order = get_order_for_owner(session, order_no, current_user["username"], is_admin=current_user.get("role") == "admin")
        updated = cancel_order(session, order, reason=payload.reason)
        return success_response(order_to_dict(updated), message="订单已取消")
    finally:
        session.close()


@router.post("/pay", summary="发起支付")
async def pay(payload: PayOrderRequest, request: Request, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        result = pay_order(
            session,
            order_no=payload.order_no,
            owner_id=current_user["username"],
            method=payload.method,
            client_ip=client_ip(request),
            is_admin=current_user.get("role") == "admin",
        )
        message = "支付成功" if result["content_type"] == "settled" else "请前往支付"
        return success_response(result, message=message)
    finally:
        session.close()


async def _collect_notify_params(method: str, request: Request) -> Dict[str, str]:
    params = {k: v for k, v in request.query_params.items()}
    if request.method == "POST":
        if method == METHOD_STRIPE:
            body = await request.body()
            params["payload"] = body.decode("utf-8")
            params["sig_header"] = request.headers.get("Stripe-Signature", "")
        else:
            form = await request.form()
            params.update({k: str(v) for k, v in form.items()})
    return params


@router.api_route("/notify/{method}", methods=["GET", "POST"], summary="支付回调", include_in_schema=False)
async def payment_notify(method: str, request: Request):
    params = await _collect_notify_params(method, request)
    session = DB.get_session()
    try:
        handle_payment_notify(session, method, params)
        return PlainTextResponse("success")
    except BillingError as e:
        return PlainTextResponse(f"fail: {e.message}", status_code=400)
    finally:
        session.close()


@router.post("/orders/{order_no}/paid", summary="管理员确认收款")
async def admin_mark_paid(order_no: str, payload: MarkPaidRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        order = mark_order_paid(session, order_no, channel=payload.channel, trade_no=payload.trade_no)
        return success_response(order_to_dict(order), message="订单已标记为已支付")
    finally:
        session.close()


@router.post("/orders/{order_no}/refund", summary="管理员退款")
async def admin_refund(order_no: str, payload: RefundRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        order = get_order_for_owner(session, order_no, current_user["username"], is_admin=True)
        updated = refund_order(session, order, reason=payload.reason)
        return success_response(order_to_dict(updated), message="退款成功")
    finally:
        session.close()


@router.delete("/orders/{order_no}", summary="管理员删除订单")
async def admin_delete(order_no: str, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        order = get_order_for_owner(session, order_no, current_user["username"], is_admin=True)
        delete_order(session, order)
        return success_response(message="订单已删除")
    finally:
        session.close()
