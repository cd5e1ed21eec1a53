"""
core/events.py：结构化事件日志

事件名常量集中在 E 类，log_event() 输出统一格式，便于 grep 与统计：

    event=billing.order.pay | order_no=NP1700000000123 | channel=balance | paid_cents=8000
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 认证 Auth ──────────────────────────────────────────────────────────────
    AUTH_LOGIN_SUCCESS = "auth.login.success"
    AUTH_LOGIN_FAIL = "auth.login.fail"
    AUTH_REGISTER = "auth.register"
    AUTH_TOKEN_EXPIRE = "auth.token.expire"

    # ── 订单 Order ─────────────────────────────────────────────────────────────
    BILLING_ORDER_CREATE = "billing.order.create"
    BILLING_ORDER_PAY = "billing.order.pay"
    BILLING_ORDER_PAY_REDIRECT = "billing.order.pay_redirect"
    BILLING_ORDER_PAY_REJECT = "billing.order.pay_reject"
    BILLING_ORDER_CANCEL = "billing.order.cancel"
    BILLING_ORDER_REFUND = "billing.order.refund"
    BILLING_ORDER_EXPIRE = "billing.order.expire"
    BILLING_ORDER_DELETE = "billing.order.delete"
    BILLING_NOTIFY_RECEIVE = "billing.notify.receive"
    BILLING_NOTIFY_FAIL = "billing.notify.fail"
    BILLING_NOTIFY_LATE = "billing.notify.late"
    BILLING_SUBSCRIPTION_RENEW = "billing.subscription.renew"
    BILLING_SUBSCRIPTION_EXPIRE = "billing.subscription.expire"
    BILLING_SWEEP_START = "billing.sweep.start"
    BILLING_SWEEP_COMPLETE = "billing.sweep.complete"

    # ── 账本 Ledger ────────────────────────────────────────────────────────────
    LEDGER_CREDIT = "ledger.credit"
    LEDGER_DEBIT = "ledger.debit"
    LEDGER_DEBIT_REJECT = "ledger.debit.reject"

    # ── 优惠券 Coupon ──────────────────────────────────────────────────────────
    COUPON_CREATE = "coupon.create"
    COUPON_UPDATE = "coupon.update"
    COUPON_DELETE = "coupon.delete"
    COUPON_VERIFY = "coupon.verify"
    COUPON_REJECT = "coupon.reject"
    COUPON_USE = "coupon.use"

    # ── 充值卡密 Recharge ──────────────────────────────────────────────────────
    RECHARGE_CODE_CREATE = "recharge.code.create"
    RECHARGE_CODE_REDEEM = "recharge.code.redeem"
    RECHARGE_CODE_REJECT = "recharge.code.reject"
    RECHARGE_CODE_DELETE = "recharge.code.delete"

    # ── 邀请 Invite ────────────────────────────────────────────────────────────
    INVITE_BIND = "invite.bind"
    INVITE_COMMISSION = "invite.commission"

    # ── 套餐 Plan ──────────────────────────────────────────────────────────────
    PLAN_CREATE = "plan.create"
    PLAN_UPDATE = "plan.update"
    PLAN_DELETE = "plan.delete"

    # ── 客户端 Client ──────────────────────────────────────────────────────────
    CLIENT_REQUEST_FAIL = "client.request.fail"
    CLIENT_SESSION_CLEAR = "client.session.clear"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"
    SYSTEM_JOB_ADD = "system.job.add"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

        log_event(logger, E.LEDGER_DEBIT_REJECT, level="warning",
                  owner_id="alice", need=8000, balance=5000)
        # → event=ledger.debit.reject | owner_id=alice | need=8000 | balance=5000
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = v if isinstance(v, str) else str(v)
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    getattr(logger, level)(" | ".join(parts), stacklevel=2)
