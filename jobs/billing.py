import time
from threading import Thread

from core.config import get_int
from core.db import DB
from core.billing_service import sweep_expired_orders
from core.plan_service import sweep_expired_plans
from core.log import get_logger, trace_ctx
from core.events import log_event, E

logger = get_logger(__name__)


def run_billing_sweep() -> dict:
    """取消超时订单并回收到期套餐，返回两部分的处理数量。"""
    session = DB.get_session()
    try:
        orders = sweep_expired_orders(session=session, limit=1000)
        plans = sweep_expired_plans(session=session, limit=1000)
        return {"orders": int(orders.get("total", 0) or 0), "plans": int(plans.get("total", 0) or 0)}
    finally:
        session.close()


def _worker_loop():
    interval = max(30, get_int("billing.sweep_interval_seconds", 300))
    while True:
        with trace_ctx():
            try:
                log_event(logger, E.BILLING_SWEEP_START, interval=interval)
                result = run_billing_sweep()
                log_event(logger, E.BILLING_SWEEP_COMPLETE, **result)
            except Exception:
                logger.exception("订单/套餐到期扫描异常")
        time.sleep(interval)


def start_billing_sweep_worker():
    t = Thread(target=_worker_loop, name="billing-sweep", daemon=True)
    t.start()
    log_event(logger, E.SYSTEM_JOB_ADD, job="billing-sweep")
    return t
