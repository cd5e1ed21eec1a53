"""
余额账本

credit()/debit() 只在调用方的事务内写入，不提交；由订单结算、退款、卡密充值等
调用方决定 commit 或 rollback。扣款使用带条件的 UPDATE（balance >= 金额），
并发扣款由数据库按行串行，余额不会出现负数。
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List

from core.errors import InsufficientFundsError, NotFoundError, ValidationError
from core.models.balance_log import BalanceLog
from core.models.user import User as DBUser
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

REASON_ORDER_PAY = "order_pay"
REASON_REFUND = "refund"
REASON_RECHARGE_CODE = "recharge_code"
REASON_TOPUP = "topup"
REASON_LATE_PAYMENT = "late_payment"
REASON_ADMIN_ADJUST = "admin_adjust"


def format_cents(cents: int) -> str:
    return f"¥{int(cents or 0) / 100:.2f}"


def parse_yuan(value) -> int:
    """"12.5" -> 1250，最多两位小数；非正数或格式错误抛 ValidationError。"""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"金额格式无效: {value}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("金额必须大于 0")
    if amount.as_tuple().exponent < -2:
        raise ValidationError("金额最多保留两位小数")
    return int(amount * 100)


def get_balance(session, owner_id: str) -> int:
    value = session.query(DBUser.balance_cents).filter(DBUser.username == owner_id).scalar()
    if value is None:
        raise NotFoundError("用户不存在")
    return int(value)


def _append_log(session, owner_id: str, change_cents: int, reason: str, ref_id: str) -> int:
    balance_after = get_balance(session, owner_id)
    session.add(
        BalanceLog(
            owner_id=owner_id,
            change_cents=change_cents,
            balance_after_cents=balance_after,
            reason=reason,
            ref_id=str(ref_id or "")[:64],
            created_at=datetime.now(),
        )
    )
    return balance_after


def credit(session, owner_id: str, amount_cents: int, reason: str, ref_id: str = "") -> int:
    """增加余额，返回变更后余额（分）。"""
    amount = int(amount_cents)
    if amount < 0:
        raise ValidationError("入账金额不能为负数")
    if amount == 0:
        return get_balance(session, owner_id)
    updated = (
        session.query(DBUser)
        .filter(DBUser.username == owner_id)
        .update(
            {DBUser.balance_cents: DBUser.balance_cents + amount, DBUser.updated_at: datetime.now()},
            synchronize_session=False,
        )
    )
    if not updated:
        raise NotFoundError("用户不存在")
    balance_after = _append_log(session, owner_id, amount, reason, ref_id)
    log_event(logger, E.LEDGER_CREDIT, owner_id=owner_id, amount=amount, reason=reason, ref=ref_id, balance=balance_after)
    return balance_after


def debit(session, owner_id: str, amount_cents: int, reason: str, ref_id: str = "") -> int:
    """扣减余额，余额不足时整笔拒绝，返回变更后余额（分）。"""
    amount = int(amount_cents)
    if amount < 0:
        raise ValidationError("扣款金额不能为负数")
    if amount == 0:
        return get_balance(session, owner_id)
    updated = (
        session.query(DBUser)
        .filter(DBUser.username == owner_id, DBUser.balance_cents >= amount)
        .update(
            {DBUser.balance_cents: DBUser.balance_cents - amount, DBUser.updated_at: datetime.now()},
            synchronize_session=False,
        )
    )
    if not updated:
        balance = get_balance(session, owner_id)
        log_event(logger, E.LEDGER_DEBIT_REJECT, level="warning", owner_id=owner_id, need=amount, balance=balance)
        raise InsufficientFundsError(balance_cents=balance, required_cents=amount)
    balance_after = _append_log(session, owner_id, -amount, reason, ref_id)
    log_event(logger, E.LEDGER_DEBIT, owner_id=owner_id, amount=amount, reason=reason, ref=ref_id, balance=balance_after)
    return balance_after


def adjust_balance(session, owner_id: str, change_cents: int, remark: str = "") -> int:
    """管理员手工调账，正数入账、负数扣款，单独提交。"""
    change = int(change_cents)
    if change == 0:
        raise ValidationError("调账金额不能为 0")
    try:
        if change > 0:
            balance = credit(session, owner_id, change, REASON_ADMIN_ADJUST, ref_id=remark)
        else:
            balance = debit(session, owner_id, -change, REASON_ADMIN_ADJUST, ref_id=remark)
        session.commit()
        return balance
    except Exception:
        session.rollback()
        raise


def _log_to_dict(item: BalanceLog) -> Dict:
    return {
        "id": item.id,
        "change_cents": int(item.change_cents or 0),
        "balance_after_cents": int(item.balance_after_cents or 0),
        "reason": item.reason,
        "ref_id": item.ref_id or "",
        "created_at": item.created_at.isoformat() if item.created_at else None,
    }


def list_balance_logs(session, owner_id: str, limit: int = 50) -> List[Dict]:
    rows = (
        session.query(BalanceLog)
        .filter(BalanceLog.owner_id == owner_id)
        .order_by(BalanceLog.id.desc())
        .limit(max(1, min(int(limit or 50), 200)))
        .all()
    )
    return [_log_to_dict(x) for x in rows]
