"""
优惠券

verify_coupon() 是只读校验，下单与结算都会重新调用；
使用次数只在订单结算成功时通过 consume_coupon() 累加。
"""

import secrets
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import or_

from core.errors import (
    CouponIneligibleError,
    NotFoundError,
    ValidationError,
    COUPON_AMOUNT_TOO_LOW,
    COUPON_DISABLED,
    COUPON_EXPIRED,
    COUPON_NOT_FOUND,
    COUPON_NOT_STARTED,
    COUPON_PLAN_NOT_ELIGIBLE,
    COUPON_USAGE_EXHAUSTED,
    COUPON_USER_LIMIT_REACHED,
)
from core.models.billing_order import BillingOrder
from core.models.coupon import Coupon
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

COUPON_TYPE_AMOUNT = "amount"
COUPON_TYPE_PERCENT = "percent"
COUPON_TYPE_DAYS = "days"
COUPON_TYPES = {COUPON_TYPE_AMOUNT, COUPON_TYPE_PERCENT, COUPON_TYPE_DAYS}

CODE_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_EDITABLE_FIELDS = (
    "code",
    "coupon_type",
    "value",
    "min_amount_cents",
    "max_discount_cents",
    "limit_per_user",
    "total_limit",
    "plan_ids",
    "start_at",
    "expired_at",
    "is_active",
)


def generate_code(length: int = 12, prefix: str = "") -> str:
    body = "".join(secrets.choice(CODE_CHARSET) for _ in range(max(6, int(length))))
    return f"{prefix}{body}"


def parse_plan_ids(value) -> Set[int]:
    if value is None:
        return set()
    items: Iterable = value if isinstance(value, (list, tuple, set)) else str(value).split(",")
    result = set()
    for item in items:
        text = str(item).strip()
        if not text:
            continue
        try:
            result.add(int(text))
        except ValueError:
            raise ValidationError(f"套餐ID无效: {text}")
    return result


def _format_plan_ids(value) -> str:
    return ",".join(str(x) for x in sorted(parse_plan_ids(value)))


def coupon_to_dict(coupon: Coupon) -> Dict:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "coupon_type": coupon.coupon_type,
        "value": int(coupon.value or 0),
        "min_amount_cents": int(coupon.min_amount_cents or 0),
        "max_discount_cents": int(coupon.max_discount_cents or 0),
        "limit_per_user": int(coupon.limit_per_user or 0),
        "total_limit": int(coupon.total_limit or 0),
        "used_count": int(coupon.used_count or 0),
        "plan_ids": sorted(parse_plan_ids(coupon.plan_ids)),
        "start_at": coupon.start_at.isoformat() if coupon.start_at else None,
        "expired_at": coupon.expired_at.isoformat() if coupon.expired_at else None,
        "is_active": bool(coupon.is_active),
    }


def compute_discount(coupon: Coupon, amount_cents: int) -> int:
    amount = max(0, int(amount_cents or 0))
    value = int(coupon.value or 0)
    if coupon.coupon_type == COUPON_TYPE_AMOUNT:
        discount = value
    elif coupon.coupon_type == COUPON_TYPE_PERCENT:
        discount = amount * value // 100
        cap = int(coupon.max_discount_cents or 0)
        if cap > 0:
            discount = min(discount, cap)
    else:
        # 赠送天数类优惠券不减免金额
        discount = 0
    return max(0, min(discount, amount))


def count_user_usage(session, coupon_id: int, owner_id: str, exclude_order_id: Optional[str] = None) -> int:
    query = session.query(BillingOrder).filter(
        BillingOrder.coupon_id == coupon_id,
        BillingOrder.owner_id == owner_id,
        BillingOrder.status == "paid",
    )
    if exclude_order_id:
        query = query.filter(BillingOrder.id != exclude_order_id)
    return query.count()


def check_coupon(session, coupon: Optional[Coupon], owner_id: str, amount_cents: int, plan_id: Optional[int] = None, now: Optional[datetime] = None, exclude_order_id: Optional[str] = None) -> None:
    """按顺序校验可用性，不可用时抛出带原因的 CouponIneligibleError。"""
    now = now or datetime.now()
    if coupon is None:
        raise CouponIneligibleError(COUPON_NOT_FOUND)
    if not coupon.is_active:
        raise CouponIneligibleError(COUPON_DISABLED)
    if coupon.start_at and now < coupon.start_at:
        raise CouponIneligibleError(COUPON_NOT_STARTED)
    if coupon.expired_at and now > coupon.expired_at:
        raise CouponIneligibleError(COUPON_EXPIRED)
    if int(coupon.total_limit or 0) > 0 and int(coupon.used_count or 0) >= int(coupon.total_limit):
        raise CouponIneligibleError(COUPON_USAGE_EXHAUSTED)
    if int(coupon.limit_per_user or 0) > 0 and count_user_usage(session, coupon.id, owner_id, exclude_order_id) >= int(coupon.limit_per_user):
        raise CouponIneligibleError(COUPON_USER_LIMIT_REACHED)
    allowed = parse_plan_ids(coupon.plan_ids)
    if allowed and (plan_id is None or int(plan_id) not in allowed):
        raise CouponIneligibleError(COUPON_PLAN_NOT_ELIGIBLE)
    if int(amount_cents or 0) < int(coupon.min_amount_cents or 0):
        raise CouponIneligibleError(COUPON_AMOUNT_TOO_LOW)


def get_coupon_by_code(session, code: str) -> Optional[Coupon]:
    text = str(code or "").strip()
    if not text:
        return None
    return session.query(Coupon).filter(Coupon.code == text).first()


def verify_coupon(session, code: str, owner_id: str, amount_cents: int, plan_id: Optional[int] = None) -> Dict:
    """只读校验优惠券并计算折扣，不占用使用次数。"""
    amount = int(amount_cents or 0)
    if amount <= 0:
        raise ValidationError("订单金额必须大于 0")
    coupon = get_coupon_by_code(session, code)
    try:
        check_coupon(session, coupon, owner_id, amount, plan_id=plan_id)
    except CouponIneligibleError as e:
        log_event(logger, E.COUPON_REJECT, code=code, owner_id=owner_id, reason=e.reason)
        raise
    discount = compute_discount(coupon, amount)
    log_event(logger, E.COUPON_VERIFY, code=coupon.code, owner_id=owner_id, amount=amount, discount=discount)
    return {
        "valid": True,
        "coupon": coupon_to_dict(coupon),
        "discount_cents": discount,
        "final_cents": amount - discount,
        "bonus_days": int(coupon.value or 0) if coupon.coupon_type == COUPON_TYPE_DAYS else 0,
    }


def consume_coupon(session, coupon_id: int, enforce_limit: bool = True) -> None:
    """
    结算事务内累加使用次数，总量已满时整笔拒绝。
    外部支付回调时款项已到账，enforce_limit=False 只计数不拒绝。
    """
    query = session.query(Coupon).filter(Coupon.id == coupon_id)
    if enforce_limit:
        query = query.filter(or_(Coupon.total_limit == 0, Coupon.used_count < Coupon.total_limit))
    updated = (
        query
        .update({Coupon.used_count: Coupon.used_count + 1}, synchronize_session=False)
    )
    if not updated:
        if enforce_limit:
            raise CouponIneligibleError(COUPON_USAGE_EXHAUSTED)
        logger.warning("优惠券已删除，跳过计数: coupon_id=%s", coupon_id)
        return
    log_event(logger, E.COUPON_USE, coupon_id=coupon_id)


def _normalize_fields(data: Dict) -> Dict:
    fields = {k: v for k, v in data.items() if k in _EDITABLE_FIELDS}
    if "coupon_type" in fields and fields["coupon_type"] not in COUPON_TYPES:
        raise ValidationError(f"不支持的优惠券类型: {fields['coupon_type']}")
    if "value" in fields and int(fields["value"] or 0) <= 0:
        raise ValidationError("优惠券面值必须大于 0")
    if fields.get("coupon_type") == COUPON_TYPE_PERCENT and int(fields.get("value") or 0) > 100:
        raise ValidationError("折扣百分比不能超过 100")
    for key in ("min_amount_cents", "max_discount_cents", "limit_per_user", "total_limit"):
        if key in fields and int(fields[key] or 0) < 0:
            raise ValidationError(f"{key} 不能为负数")
    if "plan_ids" in fields:
        fields["plan_ids"] = _format_plan_ids(fields["plan_ids"])
    if "code" in fields:
        fields["code"] = str(fields["code"] or "").strip()
    start_at, expired_at = fields.get("start_at"), fields.get("expired_at")
    if start_at and expired_at and expired_at <= start_at:
        raise ValidationError("过期时间必须晚于开始时间")
    return fields


def create_coupon(session, **data) -> Coupon:
    fields = _normalize_fields(data)
    fields.setdefault("coupon_type", COUPON_TYPE_AMOUNT)
    if "value" not in fields:
        raise ValidationError("优惠券面值必须大于 0")
    if not fields.get("code"):
        fields["code"] = generate_code()
    if get_coupon_by_code(session, fields["code"]):
        raise ValidationError("优惠券码已存在")
    now = datetime.now()
    coupon = Coupon(used_count=0, created_at=now, updated_at=now, **fields)
    session.add(coupon)
    session.commit()
    session.refresh(coupon)
    log_event(logger, E.COUPON_CREATE, coupon_id=coupon.id, code=coupon.code, type=coupon.coupon_type)
    return coupon


def create_coupons_batch(session, count: int, prefix: str = "", **data) -> List[str]:
    """批量生成同规则优惠券，返回生成的券码列表。"""
    total = int(count or 0)
    if total < 1 or total > 500:
        raise ValidationError("批量数量需在 1-500 之间")
    data.pop("code", None)
    fields = _normalize_fields(data)
    fields.setdefault("coupon_type", COUPON_TYPE_AMOUNT)
    if "value" not in fields:
        raise ValidationError("优惠券面值必须大于 0")
    now = datetime.now()
    codes = []
    while len(codes) < total:
        code = generate_code(prefix=str(prefix or "").strip().upper()[:8])
        if code in codes or get_coupon_by_code(session, code):
            continue
        session.add(Coupon(code=code, used_count=0, created_at=now, updated_at=now, **fields))
        codes.append(code)
    session.commit()
    log_event(logger, E.COUPON_CREATE, count=len(codes), prefix=prefix, type=fields["coupon_type"])
    return codes


def get_coupon(session, coupon_id: int) -> Coupon:
    coupon = session.query(Coupon).filter(Coupon.id == int(coupon_id)).first()
    if not coupon:
        raise NotFoundError("优惠券不存在")
    return coupon


def update_coupon(session, coupon_id: int, **data) -> Coupon:
    coupon = get_coupon(session, coupon_id)
    fields = _normalize_fields({k: v for k, v in data.items() if v is not None})
    if fields.get("coupon_type", coupon.coupon_type) == COUPON_TYPE_PERCENT and int(fields.get("value", coupon.value) or 0) > 100:
        raise ValidationError("折扣百分比不能超过 100")
    new_code = fields.get("code")
    if new_code and new_code != coupon.code and get_coupon_by_code(session, new_code):
        raise ValidationError("优惠券码已存在")
    if not new_code:
        fields.pop("code", None)
    for key, value in fields.items():
        setattr(coupon, key, value)
    coupon.updated_at = datetime.now()
    session.commit()
    session.refresh(coupon)
    log_event(logger, E.COUPON_UPDATE, coupon_id=coupon.id, fields=",".join(sorted(fields)))
    return coupon


def delete_coupon(session, coupon_id: int) -> None:
    coupon = get_coupon(session, coupon_id)
    session.delete(coupon)
    session.commit()
    log_event(logger, E.COUPON_DELETE, coupon_id=coupon_id)


def list_coupons(session, page: int = 1, page_size: int = 20, search: str = "") -> Dict:
    query = session.query(Coupon)
    keyword = str(search or "").strip()
    if keyword:
        query = query.filter(Coupon.code.like(f"%{keyword}%"))
    total = query.count()
    page = max(1, int(page or 1))
    page_size = max(1, min(int(page_size or 20), 100))
    rows = query.order_by(Coupon.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return {
        "list": [coupon_to_dict(x) for x in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
