"""
充值卡密

兑换先执行 UPDATE ... WHERE code=? AND used=false，再按影响行数区分
“卡密不存在”与“已被使用”；入账与卡密状态变更在同一事务提交，
并发兑换同一卡密只有一次成功。
"""

import uuid
from datetime import datetime
from typing import Dict, List

from core.errors import NotFoundError, RechargeCodeUsedError, StateConflictError, ValidationError
from core.ledger_service import REASON_RECHARGE_CODE, credit, format_cents, parse_yuan
from core.models.recharge_code import RechargeCode
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

CODE_LENGTH = 16
MAX_BATCH = 1000


def _new_code() -> str:
    return uuid.uuid4().hex[:CODE_LENGTH].upper()


def code_to_dict(item: RechargeCode) -> Dict:
    return {
        "id": item.id,
        "code": item.code,
        "amount_cents": int(item.amount_cents or 0),
        "amount_text": format_cents(item.amount_cents),
        "used": bool(item.used),
        "used_by": item.used_by or "",
        "used_at": item.used_at.isoformat() if item.used_at else None,
        "remark": item.remark or "",
        "created_by": item.created_by or "",
        "created_at": item.created_at.isoformat() if item.created_at else None,
    }


def redeem_recharge_code(session, owner_id: str, code: str) -> Dict:
    text = str(code or "").strip()
    if not text:
        raise ValidationError("请输入充值卡密")
    now = datetime.now()
    try:
        updated = (
            session.query(RechargeCode)
            .filter(RechargeCode.code == text, RechargeCode.used == False)  # noqa: E712
            .update(
                {RechargeCode.used: True, RechargeCode.used_by: owner_id, RechargeCode.used_at: now},
                synchronize_session=False,
            )
        )
        if not updated:
            session.rollback()
            exists = session.query(RechargeCode.id).filter(RechargeCode.code == text).first()
            if not exists:
                log_event(logger, E.RECHARGE_CODE_REJECT, owner_id=owner_id, reason="not_found")
                raise NotFoundError("充值卡密不存在")
            log_event(logger, E.RECHARGE_CODE_REJECT, owner_id=owner_id, reason="used")
            raise RechargeCodeUsedError("该卡密已被使用")
        amount_cents = int(
            session.query(RechargeCode.amount_cents).filter(RechargeCode.code == text).scalar() or 0
        )
        balance = credit(session, owner_id, amount_cents, REASON_RECHARGE_CODE, ref_id=text)
        session.commit()
    except Exception:
        session.rollback()
        raise
    log_event(logger, E.RECHARGE_CODE_REDEEM, owner_id=owner_id, amount=amount_cents)
    return {"amount_cents": amount_cents, "balance_cents": balance}


def create_recharge_codes(session, amount, count: int = 1, remark: str = "", created_by: str = "") -> List[str]:
    """批量生成面值相同的卡密，amount 以元为单位。"""
    amount_cents = parse_yuan(amount)
    total = int(count or 0)
    if total < 1 or total > MAX_BATCH:
        raise ValidationError(f"生成数量需在 1-{MAX_BATCH} 之间")
    now = datetime.now()
    codes = set()
    while len(codes) < total:
        codes.add(_new_code())
    existing = {x for (x,) in session.query(RechargeCode.code).filter(RechargeCode.code.in_(codes)).all()}
    while existing:
        codes -= existing
        while len(codes) < total:
            codes.add(_new_code())
        existing = {x for (x,) in session.query(RechargeCode.code).filter(RechargeCode.code.in_(codes)).all()}
    for code in codes:
        session.add(
            RechargeCode(
                code=code,
                amount_cents=amount_cents,
                used=False,
                remark=str(remark or "")[:200],
                created_by=created_by,
                created_at=now,
            )
        )
    session.commit()
    log_event(logger, E.RECHARGE_CODE_CREATE, count=total, amount=amount_cents, created_by=created_by)
    return sorted(codes)


def list_recharge_codes(session, used=None, page: int = 1, page_size: int = 20, search: str = "") -> Dict:
    query = session.query(RechargeCode)
    if used is not None:
        query = query.filter(RechargeCode.used == bool(used))
    keyword = str(search or "").strip()
    if keyword:
        query = query.filter(RechargeCode.code.like(f"%{keyword}%"))
    total = query.count()
    page = max(1, int(page or 1))
    page_size = max(1, min(int(page_size or 20), 200))
    rows = query.order_by(RechargeCode.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return {
        "list": [code_to_dict(x) for x in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


def delete_recharge_code(session, code_id: int) -> None:
    item = session.query(RechargeCode).filter(RechargeCode.id == int(code_id)).first()
    if not item:
        raise NotFoundError("充值卡密不存在")
    if item.used:
        raise StateConflictError("已使用的卡密不能删除", current_state="used")
    session.delete(item)
    session.commit()
    log_event(logger, E.RECHARGE_CODE_DELETE, code_id=code_id)
