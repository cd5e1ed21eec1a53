from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from core.errors import NotFoundError, StateConflictError, ValidationError
from core.models.billing_order import BillingOrder
from core.models.plan import Plan
from core.models.user import User as DBUser
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

GB = 1024 * 1024 * 1024

_EDITABLE_FIELDS = (
    "name",
    "description",
    "price_cents",
    "duration_days",
    "transfer_gb",
    "speed_limit",
    "device_limit",
    "group_id",
    "hidden",
    "sort",
)
_NON_NEGATIVE_FIELDS = ("price_cents", "transfer_gb", "speed_limit", "device_limit")


def plan_to_dict(plan: Plan) -> Dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description or "",
        "price_cents": int(plan.price_cents or 0),
        "price_text": f"¥{int(plan.price_cents or 0) / 100:.2f}",
        "duration_days": int(plan.duration_days or 0),
        "transfer_gb": int(plan.transfer_gb or 0),
        "speed_limit": int(plan.speed_limit or 0),
        "device_limit": int(plan.device_limit or 0),
        "group_id": int(plan.group_id or 0),
        "hidden": bool(plan.hidden),
        "sort": int(plan.sort or 0),
    }


def _validate_fields(fields: Dict) -> None:
    for key in _NON_NEGATIVE_FIELDS:
        if key in fields and int(fields[key] or 0) < 0:
            raise ValidationError(f"{key} 不能为负数")
    if "duration_days" in fields and int(fields["duration_days"] or 0) <= 0:
        raise ValidationError("套餐有效期必须大于 0 天")
    if "name" in fields and not str(fields["name"] or "").strip():
        raise ValidationError("套餐名称不能为空")


def create_plan(session, **fields) -> Plan:
    data = {k: v for k, v in fields.items() if k in _EDITABLE_FIELDS}
    data.setdefault("name", "")
    data.setdefault("duration_days", 30)
    _validate_fields(data)
    now = datetime.now()
    plan = Plan(created_at=now, updated_at=now, **data)
    session.add(plan)
    session.commit()
    session.refresh(plan)
    log_event(logger, E.PLAN_CREATE, plan_id=plan.id, name=plan.name, price_cents=plan.price_cents)
    return plan


def update_plan(session, plan_id: int, **fields) -> Plan:
    plan = get_plan(session, plan_id)
    data = {k: v for k, v in fields.items() if k in _EDITABLE_FIELDS and v is not None}
    _validate_fields(data)
    for key, value in data.items():
        setattr(plan, key, value)
    plan.updated_at = datetime.now()
    session.commit()
    session.refresh(plan)
    log_event(logger, E.PLAN_UPDATE, plan_id=plan.id, fields=",".join(sorted(data)))
    return plan


def delete_plan(session, plan_id: int) -> None:
    plan = get_plan(session, plan_id)
    pending = session.query(BillingOrder).filter(
        BillingOrder.plan_id == plan.id,
        BillingOrder.status == "pending",
    ).count()
    if pending:
        raise StateConflictError(f"该套餐仍有 {pending} 个待支付订单", current_state="pending_orders")
    session.delete(plan)
    session.commit()
    log_event(logger, E.PLAN_DELETE, plan_id=plan_id)


def get_plan(session, plan_id) -> Plan:
    plan = None
    if plan_id is not None:
        plan = session.query(Plan).filter(Plan.id == int(plan_id)).first()
    if not plan:
        raise NotFoundError("套餐不存在")
    return plan


def get_purchasable_plan(session, plan_id) -> Plan:
    plan = get_plan(session, plan_id)
    if plan.hidden:
        raise NotFoundError("套餐不存在")
    return plan


def list_plans(session, include_hidden: bool = False) -> List[Dict]:
    query = session.query(Plan)
    if not include_hidden:
        query = query.filter(Plan.hidden == False)  # noqa: E712
    rows = query.order_by(Plan.sort.desc(), Plan.price_cents.asc(), Plan.id.asc()).all()
    return [plan_to_dict(x) for x in rows]


def apply_plan_entitlement(user: DBUser, plan: Plan, bonus_days: int = 0, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """为已支付的套餐订单发放权益：续期、叠加流量、切换用户组。"""
    now = now or datetime.now()
    start = now
    current_expire = getattr(user, "plan_expires_at", None)
    if current_expire and current_expire > now:
        start = current_expire
    end = start + timedelta(days=max(1, int(plan.duration_days or 0)) + max(0, int(bonus_days or 0)))

    user.plan_id = plan.id
    user.plan_expires_at = end
    user.transfer_enable = int(user.transfer_enable or 0) + int(plan.transfer_gb or 0) * GB
    if int(plan.group_id or 0) > 0:
        user.group_id = int(plan.group_id)
    user.updated_at = now
    log_event(logger, E.BILLING_SUBSCRIPTION_RENEW, owner_id=user.username, plan_id=plan.id, expires_at=end.isoformat())
    return start, end


def sweep_expired_plans(session, limit: int = 200) -> Dict:
    now = datetime.now()
    users = session.query(DBUser).filter(
        DBUser.plan_id != None,  # noqa: E711
        DBUser.plan_expires_at != None,  # noqa: E711
        DBUser.plan_expires_at < now,
    ).limit(max(1, min(int(limit or 200), 1000))).all()
    changed = []
    for user in users:
        user.plan_id = None
        user.transfer_enable = 0
        user.group_id = 0
        user.updated_at = now
        changed.append(user.username)
    if changed:
        session.commit()
        log_event(logger, E.BILLING_SUBSCRIPTION_EXPIRE, count=len(changed))
    return {"total": len(changed), "users": changed}


def get_user_plan_summary(session, user: DBUser) -> Dict:
    plan = None
    if user.plan_id is not None:
        plan = session.query(Plan).filter(Plan.id == user.plan_id).first()
    expires_at = user.plan_expires_at
    active = bool(plan and expires_at and expires_at > datetime.now())
    return {
        "plan": plan_to_dict(plan) if plan else None,
        "active": active,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "transfer_enable": int(user.transfer_enable or 0),
        "group_id": int(user.group_id or 0),
    }
