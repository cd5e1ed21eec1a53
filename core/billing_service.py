"""
订单与支付结算

状态流转只有 pending -> paid / cancelled 与 paid -> refunded 三条，
每次流转都是带状态条件的 UPDATE，并与余额变动、优惠券计数、权益发放共用一个事务：
并发结算、取消、退款同一订单时只有一方成功，其余方拿到 StateConflictError。
"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import or_

from core.config import get_int
from core.errors import (
    BillingError,
    ForbiddenError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from core.models.billing_order import BillingOrder
from core.models.coupon import Coupon
from core.models.user import User as DBUser
from core.coupon_service import check_coupon, consume_coupon, verify_coupon
from core.invite_service import process_invite_commission
from core.ledger_service import (
    REASON_ORDER_PAY,
    REASON_REFUND,
    REASON_LATE_PAYMENT,
    REASON_TOPUP,
    credit,
    debit,
    format_cents,
    get_balance,
    parse_yuan,
)
from core.payment import (
    METHOD_BALANCE,
    PAY_METHODS,
    PayRequest,
    get_payment_provider,
)
from core.plan_service import (
    apply_plan_entitlement,
    get_plan,
    get_purchasable_plan,
    get_user_plan_summary,
    list_plans,
)
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_CANCELLED = "cancelled"
ORDER_STATUS_REFUNDED = "refunded"

ORDER_TYPE_PLAN = "plan"
ORDER_TYPE_RECHARGE = "recharge"

CHANNEL_MANUAL = "manual"

MAX_RECHARGE_CENTS = 10_000_000


def _new_order_no() -> str:
    return f"NP{datetime.now().strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:6].upper()}"


def _order_ttl() -> timedelta:
    return timedelta(minutes=max(1, get_int("billing.order_ttl_minutes", 30)))


def _checkout_ttl() -> timedelta:
    # Stripe 要求收银台有效期在 30 分钟到 24 小时之间
    return timedelta(minutes=min(1440, max(30, get_int("billing.checkout_ttl_minutes", 60))))


def order_to_dict(order: BillingOrder) -> Dict:
    return {
        "id": order.id,
        "order_no": order.order_no,
        "owner_id": order.owner_id,
        "order_type": order.order_type,
        "plan_id": order.plan_id,
        "coupon_id": order.coupon_id,
        "amount_cents": int(order.amount_cents or 0),
        "discount_cents": int(order.discount_cents or 0),
        "paid_cents": int(order.paid_cents or 0),
        "amount_text": format_cents(order.paid_cents),
        "bonus_days": int(order.bonus_days or 0),
        "currency": order.currency,
        "channel": order.channel or "",
        "status": order.status,
        "trade_no": order.trade_no or "",
        "note": order.note or "",
        "expires_at": order.expires_at.isoformat() if order.expires_at else None,
        "checkout_expires_at": order.checkout_expires_at.isoformat() if order.checkout_expires_at else None,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "refunded_at": order.refunded_at.isoformat() if order.refunded_at else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


def _require_user(session, owner_id: str) -> DBUser:
    user = session.query(DBUser).filter(DBUser.username == str(owner_id or "").strip()).first()
    if not user:
        raise NotFoundError("用户不存在")
    return user


def _new_order(owner_id: str, order_type: str, amount_cents: int, **fields) -> BillingOrder:
    now = datetime.now()
    discount = int(fields.pop("discount_cents", 0) or 0)
    return BillingOrder(
        id=str(uuid.uuid4()),
        order_no=_new_order_no(),
        owner_id=owner_id,
        order_type=order_type,
        amount_cents=amount_cents,
        discount_cents=discount,
        paid_cents=amount_cents - discount,
        currency="CNY",
        status=ORDER_STATUS_PENDING,
        expires_at=now + _order_ttl(),
        created_at=now,
        updated_at=now,
        **fields,
    )


def create_order(session, owner_id: str, plan_id: int, coupon_code: str = "", note: str = "") -> BillingOrder:
    """创建套餐订单；优惠券不可用时整单拒绝，不做静默降级。"""
    user = _require_user(session, owner_id)
    plan = get_purchasable_plan(session, plan_id)
    amount_cents = int(plan.price_cents or 0)
    if amount_cents <= 0:
        raise ValidationError("套餐价格无效")

    discount_cents = 0
    bonus_days = 0
    coupon_id = None
    if str(coupon_code or "").strip():
        result = verify_coupon(session, coupon_code, user.username, amount_cents, plan_id=plan.id)
        discount_cents = int(result["discount_cents"])
        bonus_days = int(result["bonus_days"])
        coupon_id = result["coupon"]["id"]

    order = _new_order(
        user.username,
        ORDER_TYPE_PLAN,
        amount_cents,
        plan_id=plan.id,
        coupon_id=coupon_id,
        discount_cents=discount_cents,
        bonus_days=bonus_days,
        note=(note or "").strip()[:500],
    )
    session.add(order)
    session.commit()
    session.refresh(order)
    log_event(
        logger, E.BILLING_ORDER_CREATE,
        order_no=order.order_no, owner_id=order.owner_id, plan_id=plan.id,
        amount=order.amount_cents, discount=order.discount_cents, coupon_id=coupon_id,
    )
    return order


def create_recharge_order(session, owner_id: str, amount) -> BillingOrder:
    """创建余额充值订单，amount 以元为单位，最多两位小数。"""
    user = _require_user(session, owner_id)
    amount_cents = parse_yuan(amount)
    if amount_cents > MAX_RECHARGE_CENTS:
        raise ValidationError(f"单笔充值不能超过 {format_cents(MAX_RECHARGE_CENTS)}")
    order = _new_order(user.username, ORDER_TYPE_RECHARGE, amount_cents, note="余额充值")
    session.add(order)
    session.commit()
    session.refresh(order)
    log_event(logger, E.BILLING_ORDER_CREATE, order_no=order.order_no, owner_id=order.owner_id, type=ORDER_TYPE_RECHARGE, amount=amount_cents)
    return order


def get_order_by_no(session, order_no: str) -> Optional[BillingOrder]:
    no = str(order_no or "").strip()
    if not no:
        return None
    return session.query(BillingOrder).filter(BillingOrder.order_no == no).first()


def get_order_for_owner(session, order_no: str, owner_id: str, is_admin: bool = False) -> BillingOrder:
    order = get_order_by_no(session, order_no)
    if not order:
        raise NotFoundError("订单不存在")
    if not is_admin and order.owner_id != owner_id:
        raise ForbiddenError("无权限操作该订单")
    return order


def _conflict(order: BillingOrder, action: str) -> StateConflictError:
    return StateConflictError(f"订单当前状态为 {order.status}，不能{action}", current_state=order.status)


def _revalidate_coupon(session, order: BillingOrder) -> None:
    if not order.coupon_id:
        return
    coupon = session.query(Coupon).filter(Coupon.id == order.coupon_id).first()
    check_coupon(
        session, coupon, order.owner_id, int(order.amount_cents or 0),
        plan_id=order.plan_id, exclude_order_id=order.id,
    )


def _settle_order(
    session,
    order: BillingOrder,
    channel: str,
    use_balance: bool = False,
    trade_no: str = "",
    provider_payload: str = "",
) -> BillingOrder:
    """
    pending -> paid 的唯一入口。已支付直接返回（幂等），其他状态抛 StateConflictError。
    任一步骤失败整笔回滚，订单保持 pending。
    优惠券只在余额支付时复核；外部回调与人工确认时款项已到账，只累加使用次数。
    """
    if order.status == ORDER_STATUS_PAID:
        return order
    if order.status != ORDER_STATUS_PENDING:
        raise _conflict(order, "支付")

    now = datetime.now()
    paid_cents = int(order.amount_cents or 0) - int(order.discount_cents or 0)
    try:
        updated = (
            session.query(BillingOrder)
            .filter(BillingOrder.id == order.id, BillingOrder.status == ORDER_STATUS_PENDING)
            .update(
                {
                    BillingOrder.status: ORDER_STATUS_PAID,
                    BillingOrder.channel: channel,
                    BillingOrder.paid_cents: paid_cents,
                    BillingOrder.paid_at: now,
                    BillingOrder.trade_no: (trade_no or order.trade_no or "")[:128],
                    BillingOrder.provider_payload: (provider_payload or "")[:4000],
                    BillingOrder.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            session.rollback()
            session.refresh(order)
            if order.status == ORDER_STATUS_PAID:
                return order
            raise _conflict(order, "支付")

        if use_balance:
            _revalidate_coupon(session, order)
            debit(session, order.owner_id, paid_cents, REASON_ORDER_PAY, ref_id=order.order_no)
        if order.coupon_id:
            consume_coupon(session, order.coupon_id, enforce_limit=use_balance)

        if order.order_type == ORDER_TYPE_RECHARGE:
            credit(session, order.owner_id, paid_cents, REASON_TOPUP, ref_id=order.order_no)
        else:
            user = _require_user(session, order.owner_id)
            plan = get_plan(session, order.plan_id)
            apply_plan_entitlement(user, plan, bonus_days=int(order.bonus_days or 0), now=now)
            process_invite_commission(session, order.owner_id, paid_cents, order.order_no)

        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(order)
    log_event(logger, E.BILLING_ORDER_PAY, order_no=order.order_no, owner_id=order.owner_id, channel=channel, paid_cents=paid_cents)
    return order


def pay_order(session, order_no: str, owner_id: str, method: str, client_ip: str = "", is_admin: bool = False) -> Dict:
    """
    发起支付。余额支付同步结算并返回 content_type=settled；
    外部通道只返回跳转地址，结算等待回调。
    """
    method = str(method or "").strip().lower()
    if method not in PAY_METHODS:
        raise ValidationError(f"不支持的支付方式: {method}")
    order = get_order_for_owner(session, order_no, owner_id, is_admin=is_admin)

    if order.status == ORDER_STATUS_PAID:
        return {"content_type": "settled", "pay_url": "", "trade_no": order.trade_no or "", "order": order_to_dict(order)}
    if order.status != ORDER_STATUS_PENDING:
        log_event(logger, E.BILLING_ORDER_PAY_REJECT, order_no=order.order_no, status=order.status, method=method)
        raise _conflict(order, "支付")
    if order.expires_at and order.expires_at < datetime.now():
        log_event(logger, E.BILLING_ORDER_PAY_REJECT, order_no=order.order_no, status="expired", method=method)
        raise StateConflictError("订单已过期，请重新下单", current_state="expired")

    if method == METHOD_BALANCE:
        if order.order_type == ORDER_TYPE_RECHARGE:
            raise ValidationError("充值订单不能使用余额支付")
        try:
            order = _settle_order(session, order, METHOD_BALANCE, use_balance=True)
        except BillingError as e:
            log_event(logger, E.BILLING_ORDER_PAY_REJECT, order_no=order.order_no, method=method, code=e.code, reason=e.message)
            raise
        return {"content_type": "settled", "pay_url": "", "trade_no": "", "order": order_to_dict(order)}

    net_cents = int(order.amount_cents or 0) - int(order.discount_cents or 0)
    if net_cents <= 0:
        raise ValidationError("实付金额为 0，请使用余额支付")
    provider = get_payment_provider(method)
    try:
        _revalidate_coupon(session, order)
    except BillingError as e:
        log_event(logger, E.BILLING_ORDER_PAY_REJECT, order_no=order.order_no, method=method, code=e.code, reason=e.message)
        raise

    now = datetime.now()
    deadline = now + _checkout_ttl()
    resp = provider.pay(
        PayRequest(
            order_no=order.order_no,
            amount_cents=net_cents,
            description=f"订单 {order.order_no}",
            client_ip=client_ip,
            method=method,
            expires_at=deadline,
        )
    )
    if resp.trade_no:
        order.trade_no = resp.trade_no[:128]
    order.checkout_expires_at = deadline
    order.updated_at = now
    session.commit()
    session.refresh(order)
    log_event(logger, E.BILLING_ORDER_PAY_REDIRECT, order_no=order.order_no, method=method, trade_no=resp.trade_no)
    return {**resp.model_dump(), "order": order_to_dict(order)}


def _check_notify_amount(order: BillingOrder, expected_cents: int) -> None:
    expected = int(expected_cents or 0)
    if expected and expected != int(order.amount_cents or 0) - int(order.discount_cents or 0):
        raise ValidationError(f"回调金额 {format_cents(expected)} 与订单实付金额不符")


def _credit_late_payment(session, order: BillingOrder, channel: str, trade_no: str, provider_payload: str) -> BillingOrder:
    """
    订单已取消后才收到支付成功回调：订单保持 cancelled，实付金额转入余额，
    流水号与回调内容写入订单供对账。paid_at 为空作为条件，重复回调不会重复入账。
    """
    now = datetime.now()
    amount = int(order.amount_cents or 0) - int(order.discount_cents or 0)
    try:
        updated = (
            session.query(BillingOrder)
            .filter(
                BillingOrder.id == order.id,
                BillingOrder.status == ORDER_STATUS_CANCELLED,
                BillingOrder.paid_at == None,  # noqa: E711
            )
            .update(
                {
                    BillingOrder.channel: channel,
                    BillingOrder.paid_cents: amount,
                    BillingOrder.paid_at: now,
                    BillingOrder.trade_no: (trade_no or order.trade_no or "")[:128],
                    BillingOrder.provider_payload: (provider_payload or "")[:4000],
                    BillingOrder.note: f"{order.note or ''}\n取消后收到付款 {format_cents(amount)}，已转入余额".strip()[:800],
                    BillingOrder.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            session.rollback()
            session.refresh(order)
            if order.status == ORDER_STATUS_CANCELLED and order.paid_at:
                return order
            raise _conflict(order, "支付")
        credit(session, order.owner_id, amount, REASON_LATE_PAYMENT, ref_id=order.order_no)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(order)
    log_event(logger, E.BILLING_NOTIFY_LATE, level="warning", order_no=order.order_no, owner_id=order.owner_id, channel=channel, amount=amount)
    return order


def mark_order_paid(
    session,
    order_no: str,
    channel: str = CHANNEL_MANUAL,
    trade_no: str = "",
    provider_payload: str = "",
    expected_cents: int = 0,
) -> BillingOrder:
    """外部回调或管理员确认收款，不扣余额；充值订单在同一事务内入账。"""
    order = get_order_by_no(session, order_no)
    if not order:
        raise NotFoundError("订单不存在")
    _check_notify_amount(order, expected_cents)
    return _settle_order(
        session,
        order,
        channel=str(channel or CHANNEL_MANUAL).strip().lower()[:32],
        use_balance=False,
        trade_no=trade_no,
        provider_payload=provider_payload,
    )


def handle_payment_notify(session, method: str, params: Dict[str, str]) -> BillingOrder:
    provider = get_payment_provider(method)
    try:
        result = provider.verify(params)
        log_event(logger, E.BILLING_NOTIFY_RECEIVE, method=method, order_no=result.order_no, trade_no=result.trade_no, amount=result.amount_cents)
        channel = str(params.get("type") or method).strip().lower()[:32]
        payload = {k: v for k, v in params.items() if k not in ("sign", "sig_header")}
        provider_payload = json.dumps(payload, ensure_ascii=False, default=str)

        order = get_order_by_no(session, result.order_no)
        if not order:
            raise NotFoundError("订单不存在")
        _check_notify_amount(order, result.amount_cents)
        if order.status == ORDER_STATUS_CANCELLED:
            return _credit_late_payment(session, order, channel, result.trade_no, provider_payload)
        if order.status == ORDER_STATUS_REFUNDED:
            # 已结算过又退款的订单，重复回调直接确认
            return order
        return _settle_order(
            session,
            order,
            channel=channel,
            use_balance=False,
            trade_no=result.trade_no,
            provider_payload=provider_payload,
        )
    except BillingError as e:
        log_event(logger, E.BILLING_NOTIFY_FAIL, level="warning", method=method, code=e.code, reason=e.message)
        raise


def cancel_order(session, order: BillingOrder, reason: str = "", status: str = ORDER_STATUS_CANCELLED) -> BillingOrder:
    """仅 pending 可取消，与结算竞争时以数据库条件更新的结果为准。"""
    if not order:
        raise NotFoundError("订单不存在")
    now = datetime.now()
    note = (order.note or "")
    if reason:
        note = f"{note}\n取消原因: {reason}".strip()
    updated = (
        session.query(BillingOrder)
        .filter(BillingOrder.id == order.id, BillingOrder.status == ORDER_STATUS_PENDING)
        .update(
            {
                BillingOrder.status: status,
                BillingOrder.cancelled_at: now,
                BillingOrder.note: note[:800],
                BillingOrder.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        session.rollback()
        session.refresh(order)
        raise _conflict(order, "取消")
    session.commit()
    session.refresh(order)
    log_event(logger, E.BILLING_ORDER_CANCEL, order_no=order.order_no, owner_id=order.owner_id, reason=reason)
    return order


def refund_order(session, order: BillingOrder, reason: str = "") -> BillingOrder:
    """paid -> refunded，实付金额原路退回余额，与状态变更同一事务。"""
    if not order:
        raise NotFoundError("订单不存在")
    if order.order_type == ORDER_TYPE_RECHARGE:
        raise ValidationError("充值订单不支持退款")
    now = datetime.now()
    try:
        updated = (
            session.query(BillingOrder)
            .filter(BillingOrder.id == order.id, BillingOrder.status == ORDER_STATUS_PAID)
            .update(
                {
                    BillingOrder.status: ORDER_STATUS_REFUNDED,
                    BillingOrder.refunded_at: now,
                    BillingOrder.note: f"{order.note or ''}\n退款: {reason}".strip()[:800] if reason else order.note,
                    BillingOrder.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            session.rollback()
            session.refresh(order)
            raise _conflict(order, "退款")
        credit(session, order.owner_id, int(order.paid_cents or 0), REASON_REFUND, ref_id=order.order_no)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(order)
    log_event(logger, E.BILLING_ORDER_REFUND, order_no=order.order_no, owner_id=order.owner_id, amount=order.paid_cents)
    return order


def delete_order(session, order: BillingOrder) -> None:
    if not order:
        raise NotFoundError("订单不存在")
    if order.status == ORDER_STATUS_PAID:
        raise _conflict(order, "删除")
    order_no = order.order_no
    session.delete(order)
    session.commit()
    log_event(logger, E.BILLING_ORDER_DELETE, order_no=order_no)


def list_orders(session, owner_id: str = "", status: str = "", order_type: str = "", page: int = 1, page_size: int = 20) -> Dict:
    query = session.query(BillingOrder)
    if owner_id:
        query = query.filter(BillingOrder.owner_id == owner_id)
    status_text = str(status or "").strip().lower()
    if status_text:
        query = query.filter(BillingOrder.status == status_text)
    type_text = str(order_type or "").strip().lower()
    if type_text:
        query = query.filter(BillingOrder.order_type == type_text)
    total = query.count()
    page = max(1, int(page or 1))
    page_size = max(1, min(int(page_size or 20), 200))
    rows = query.order_by(BillingOrder.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return {
        "list": [order_to_dict(x) for x in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


def sweep_expired_orders(session, limit: int = 200) -> Dict:
    """
    将超过有效期仍未支付的订单置为 cancelled。
    已发起外部支付且收银台尚未过期的订单跳过，等收银台失效后再取消。
    """
    now = datetime.now()
    rows = session.query(BillingOrder).filter(
        BillingOrder.status == ORDER_STATUS_PENDING,
        BillingOrder.expires_at != None,  # noqa: E711
        BillingOrder.expires_at < now,
        or_(BillingOrder.checkout_expires_at == None, BillingOrder.checkout_expires_at < now),  # noqa: E711
    ).limit(max(1, min(int(limit or 200), 1000))).all()
    expired = []
    for order in rows:
        updated = (
            session.query(BillingOrder)
            .filter(
                BillingOrder.id == order.id,
                BillingOrder.status == ORDER_STATUS_PENDING,
                or_(BillingOrder.checkout_expires_at == None, BillingOrder.checkout_expires_at < now),  # noqa: E711
            )
            .update(
                {
                    BillingOrder.status: ORDER_STATUS_CANCELLED,
                    BillingOrder.cancelled_at: now,
                    BillingOrder.note: f"{order.note or ''}\n超时未支付，系统自动取消".strip()[:800],
                    BillingOrder.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated:
            expired.append(order.order_no)
    if expired:
        session.commit()
        log_event(logger, E.BILLING_ORDER_EXPIRE, count=len(expired))
    return {"total": len(expired), "orders": expired}


def get_user_billing_overview(session, user: DBUser) -> Dict:
    return {
        "balance_cents": get_balance(session, user.username),
        "plan": get_user_plan_summary(session, user),
        "catalog": list_plans(session),
        "recent_orders": list_orders(session, owner_id=user.username, page_size=10)["list"],
    }
