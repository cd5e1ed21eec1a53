"""
业务异常

服务层只抛出 BillingError 子类，web.py 统一渲染为
{"code": <业务码>, "message": <提示>, "data": <附加信息>}。
继承 ValueError，沿用服务层 ``raise ValueError`` 的既有约定。
"""

from typing import Any, Dict, Optional


class BillingError(ValueError):
    code = 40000
    status_code = 400
    default_message = "请求失败"

    def __init__(self, message: str = "", data: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.data = data or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": self.data or None}


class ValidationError(BillingError):
    code = 40001
    status_code = 400
    default_message = "参数无效"


class ForbiddenError(BillingError):
    code = 40301
    status_code = 403
    default_message = "无权限执行此操作"


class NotFoundError(BillingError):
    code = 40401
    status_code = 404
    default_message = "资源不存在"


class StateConflictError(BillingError):
    code = 40901
    status_code = 409
    default_message = "当前状态不允许该操作"

    def __init__(self, message: str = "", current_state: str = ""):
        super().__init__(message, data={"current_state": current_state})
        self.current_state = current_state


class RechargeCodeUsedError(BillingError):
    code = 40902
    status_code = 409
    default_message = "充值卡密已被使用"


class InsufficientFundsError(BillingError):
    code = 40201
    status_code = 402
    default_message = "余额不足"

    def __init__(self, balance_cents: int = 0, required_cents: int = 0):
        super().__init__(
            f"余额不足: 当前 ¥{balance_cents / 100:.2f}，需要 ¥{required_cents / 100:.2f}",
            data={"balance_cents": balance_cents, "required_cents": required_cents},
        )
        self.balance_cents = balance_cents
        self.required_cents = required_cents


COUPON_NOT_FOUND = "not_found"
COUPON_DISABLED = "disabled"
COUPON_NOT_STARTED = "not_started"
COUPON_EXPIRED = "expired"
COUPON_USAGE_EXHAUSTED = "usage_exhausted"
COUPON_USER_LIMIT_REACHED = "user_limit_reached"
COUPON_AMOUNT_TOO_LOW = "amount_too_low"
COUPON_PLAN_NOT_ELIGIBLE = "plan_not_eligible"

COUPON_REASON_MESSAGES = {
    COUPON_NOT_FOUND: "优惠券不存在",
    COUPON_DISABLED: "优惠券已禁用",
    COUPON_NOT_STARTED: "优惠券未生效",
    COUPON_EXPIRED: "优惠券已过期",
    COUPON_USAGE_EXHAUSTED: "优惠券已领完",
    COUPON_USER_LIMIT_REACHED: "您已达到该优惠券的使用次数上限",
    COUPON_AMOUNT_TOO_LOW: "未达到优惠券最低消费金额",
    COUPON_PLAN_NOT_ELIGIBLE: "该套餐不可使用此优惠券",
}


class CouponIneligibleError(BillingError):
    code = 42201
    status_code = 422
    default_message = "优惠券不可用"

    def __init__(self, reason: str):
        super().__init__(COUPON_REASON_MESSAGES.get(reason, self.default_message), data={"reason": reason})
        self.reason = reason


class ExternalPaymentError(BillingError):
    """支付网关不可达或拒绝请求，可重试。"""

    code = 50201
    status_code = 502
    default_message = "支付通道暂不可用，请稍后重试"
    retryable = True
