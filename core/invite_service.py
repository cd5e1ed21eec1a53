import secrets
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional

from sqlalchemy import func

from core.config import cfg, get_bool
from core.errors import NotFoundError, ValidationError
from core.models.invite_record import InviteRecord
from core.models.user import User as DBUser
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

INVITE_STATUS_PENDING = 0
INVITE_STATUS_SETTLED = 1

INVITE_CODE_CHARSET = "abcdefghjkmnpqrstuvwxyz23456789"


def new_invite_code(session, length: int = 8) -> str:
    while True:
        code = "".join(secrets.choice(INVITE_CODE_CHARSET) for _ in range(length))
        if not session.query(DBUser.id).filter(DBUser.invite_code == code).first():
            return code


def mask_email(email: str) -> str:
    text = str(email or "")
    if "@" not in text:
        return text[:2] + "***" if len(text) > 2 else text
    name, domain = text.split("@", 1)
    if len(name) <= 2:
        return f"{name[:1]}***@{domain}"
    return f"{name[:2]}***{name[-1]}@{domain}"


def commission_rate() -> Decimal:
    try:
        rate = Decimal(str(cfg.get("invite.commission_rate", "0.1")))
    except ArithmeticError:
        return Decimal("0")
    return min(max(rate, Decimal("0")), Decimal("1"))


def bind_invite_code(session, invitee: DBUser, invite_code: str) -> Optional[InviteRecord]:
    """注册时绑定邀请关系并写入待结算记录，不提交。"""
    code = str(invite_code or "").strip()
    if not code:
        return None
    inviter = session.query(DBUser).filter(DBUser.invite_code == code).first()
    if not inviter:
        raise ValidationError("邀请码无效")
    if inviter.username == invitee.username:
        raise ValidationError("不能使用自己的邀请码")
    invitee.invited_by = inviter.username
    now = datetime.now()
    record = InviteRecord(
        inviter_id=inviter.username,
        invitee_id=invitee.username,
        commission_cents=0,
        order_no="",
        status=INVITE_STATUS_PENDING,
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    log_event(logger, E.INVITE_BIND, inviter=inviter.username, invitee=invitee.username)
    return record


def process_invite_commission(session, invitee_id: str, paid_cents: int, order_no: str) -> int:
    """
    被邀请人首次付费后给邀请人结算返利，运行在订单结算事务内，不提交。
    待结算记录通过带条件的 UPDATE 置为已结算，同一被邀请人只会结算一次。
    返回本次返利金额（分）。
    """
    if not get_bool("invite.enabled", False):
        return 0
    invitee = session.query(DBUser).filter(DBUser.username == invitee_id).first()
    if not invitee or not invitee.invited_by:
        return 0
    commission = int((Decimal(int(paid_cents or 0)) * commission_rate()).to_integral_value(rounding=ROUND_DOWN))
    now = datetime.now()
    record = session.query(InviteRecord).filter(InviteRecord.invitee_id == invitee_id).first()
    if record is None:
        record = InviteRecord(
            inviter_id=invitee.invited_by,
            invitee_id=invitee_id,
            commission_cents=0,
            order_no="",
            status=INVITE_STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        session.flush()
    updated = (
        session.query(InviteRecord)
        .filter(InviteRecord.invitee_id == invitee_id, InviteRecord.status == INVITE_STATUS_PENDING)
        .update(
            {
                InviteRecord.status: INVITE_STATUS_SETTLED,
                InviteRecord.commission_cents: commission,
                InviteRecord.order_no: order_no,
                InviteRecord.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        return 0
    if commission > 0:
        session.query(DBUser).filter(DBUser.username == invitee.invited_by).update(
            {DBUser.commission_cents: DBUser.commission_cents + commission},
            synchronize_session=False,
        )
    log_event(logger, E.INVITE_COMMISSION, inviter=invitee.invited_by, invitee=invitee_id, order_no=order_no, commission=commission)
    return commission


def get_invite_info(session, owner_id: str) -> Dict:
    user = session.query(DBUser).filter(DBUser.username == owner_id).first()
    if not user:
        raise NotFoundError("用户不存在")
    base = session.query(InviteRecord).filter(InviteRecord.inviter_id == owner_id)
    total_commission = session.query(func.coalesce(func.sum(InviteRecord.commission_cents), 0)).filter(
        InviteRecord.inviter_id == owner_id,
        InviteRecord.status == INVITE_STATUS_SETTLED,
    ).scalar()
    pending_count = base.filter(InviteRecord.status == INVITE_STATUS_PENDING).count()
    base_url = str(cfg.get("app.base_url", "http://127.0.0.1:8001")).rstrip("/")
    return {
        "invite_code": user.invite_code or "",
        "invite_link": f"{base_url}/register?code={user.invite_code or ''}",
        "invite_count": base.count(),
        "pending_count": pending_count,
        "total_commission_cents": int(total_commission or 0),
        "commission_balance_cents": int(user.commission_cents or 0),
        "enabled": get_bool("invite.enabled", False),
        "commission_rate": str(commission_rate()),
    }


def list_invite_records(session, owner_id: str, page: int = 1, page_size: int = 20) -> Dict:
    query = session.query(InviteRecord).filter(InviteRecord.inviter_id == owner_id)
    total = query.count()
    page = max(1, int(page or 1))
    page_size = max(1, min(int(page_size or 20), 100))
    rows = query.order_by(InviteRecord.created_at.desc(), InviteRecord.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
    emails = {}
    invitees = [x.invitee_id for x in rows]
    if invitees:
        emails = dict(session.query(DBUser.username, DBUser.email).filter(DBUser.username.in_(invitees)).all())
    return {
        "list": [
            {
                "id": x.id,
                "email": mask_email(emails.get(x.invitee_id) or ""),
                "commission_cents": int(x.commission_cents or 0),
                "status": int(x.status or 0),
                "order_no": x.order_no or "",
                "created_at": x.created_at.isoformat() if x.created_at else None,
            }
            for x in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
