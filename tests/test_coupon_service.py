import unittest
import uuid
from datetime import datetime, timedelta

from billing_fixtures import create_test_plan, create_user, setup_database
from core.billing_service import create_order, pay_order
from core.coupon_service import (
    COUPON_TYPE_AMOUNT,
    COUPON_TYPE_DAYS,
    COUPON_TYPE_PERCENT,
    compute_discount,
    consume_coupon,
    create_coupon,
    create_coupons_batch,
    get_coupon,
    list_coupons,
    parse_plan_ids,
    update_coupon,
    verify_coupon,
)
from core.errors import CouponIneligibleError, ValidationError
from core.models.balance_log import BalanceLog
from core.models.billing_order import BillingOrder
from core.models.coupon import Coupon
from core.models.plan import Plan
from core.models.user import User


def _code(prefix="T"):
    return f"{prefix}{uuid.uuid4().hex[:10].upper()}"


class CouponServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.session = setup_database()
        self.user = create_user(self.session, balance_cents=100000)
        self.username = self.user.username
        self.plan = create_test_plan(self.session, price_cents=10000)
        self.coupon_ids = []

    def tearDown(self):
        self.session.rollback()
        self.session.query(BillingOrder).filter(BillingOrder.owner_id == self.username).delete()
        self.session.query(BalanceLog).filter(BalanceLog.owner_id == self.username).delete()
        if self.coupon_ids:
            self.session.query(Coupon).filter(Coupon.id.in_(self.coupon_ids)).delete(synchronize_session=False)
        self.session.query(Plan).filter(Plan.id == self.plan.id).delete()
        self.session.query(User).filter(User.username == self.username).delete()
        self.session.commit()
        self.session.close()

    def _coupon(self, **fields) -> Coupon:
        data = {"code": _code(), "coupon_type": COUPON_TYPE_AMOUNT, "value": 2000, "limit_per_user": 0}
        data.update(fields)
        coupon = create_coupon(self.session, **data)
        self.coupon_ids.append(coupon.id)
        return coupon

    def _reason(self, code, amount_cents=10000, plan_id=None):
        with self.assertRaises(CouponIneligibleError) as ctx:
            verify_coupon(self.session, code, self.username, amount_cents, plan_id=plan_id)
        return ctx.exception.reason

    def test_verify_is_read_only(self):
        coupon = self._coupon(total_limit=1)
        for _ in range(5):
            result = verify_coupon(self.session, coupon.code, self.username, 10000)
            self.assertTrue(result["valid"])
            self.assertEqual(result["discount_cents"], 2000)
            self.assertEqual(result["final_cents"], 8000)
        self.session.expire_all()
        self.assertEqual(get_coupon(self.session, coupon.id).used_count, 0)

    def test_rejection_reasons(self):
        now = datetime.now()
        self.assertEqual(self._reason("NO_SUCH_CODE"), "not_found")
        self.assertEqual(self._reason(self._coupon(is_active=False).code), "disabled")
        self.assertEqual(self._reason(self._coupon(start_at=now + timedelta(days=1)).code), "not_started")
        self.assertEqual(
            self._reason(self._coupon(start_at=now - timedelta(days=2), expired_at=now - timedelta(days=1)).code),
            "expired",
        )
        self.assertEqual(self._reason(self._coupon(min_amount_cents=20000).code), "amount_too_low")
        self.assertEqual(
            self._reason(self._coupon(plan_ids=[self.plan.id + 100000]).code, plan_id=self.plan.id),
            "plan_not_eligible",
        )

        exhausted = self._coupon(total_limit=1)
        consume_coupon(self.session, exhausted.id)
        self.session.commit()
        self.assertEqual(self._reason(exhausted.code), "usage_exhausted")

    def test_plan_restricted_coupon_accepts_listed_plan(self):
        coupon = self._coupon(plan_ids=f"{self.plan.id}")
        result = verify_coupon(self.session, coupon.code, self.username, 10000, plan_id=self.plan.id)
        self.assertEqual(result["coupon"]["plan_ids"], [self.plan.id])

    def test_per_user_limit_counts_paid_orders_only(self):
        coupon = self._coupon(limit_per_user=1)
        order = create_order(self.session, self.username, self.plan.id, coupon_code=coupon.code)
        # 未支付订单不占用次数
        verify_coupon(self.session, coupon.code, self.username, 10000, plan_id=self.plan.id)

        pay_order(self.session, order.order_no, self.username, "balance")
        self.assertEqual(self._reason(coupon.code, plan_id=self.plan.id), "user_limit_reached")

    def test_compute_discount(self):
        amount = Coupon(coupon_type=COUPON_TYPE_AMOUNT, value=20000, max_discount_cents=0)
        self.assertEqual(compute_discount(amount, 10000), 10000)

        percent = Coupon(coupon_type=COUPON_TYPE_PERCENT, value=15, max_discount_cents=0)
        self.assertEqual(compute_discount(percent, 999), 149)

        capped = Coupon(coupon_type=COUPON_TYPE_PERCENT, value=50, max_discount_cents=1000)
        self.assertEqual(compute_discount(capped, 10000), 1000)

        days = Coupon(coupon_type=COUPON_TYPE_DAYS, value=7, max_discount_cents=0)
        self.assertEqual(compute_discount(days, 10000), 0)

    def test_days_coupon_reports_bonus_days(self):
        coupon = self._coupon(coupon_type=COUPON_TYPE_DAYS, value=7)
        result = verify_coupon(self.session, coupon.code, self.username, 10000)
        self.assertEqual(result["discount_cents"], 0)
        self.assertEqual(result["bonus_days"], 7)

    def test_consume_respects_total_limit(self):
        coupon = self._coupon(total_limit=2)
        consume_coupon(self.session, coupon.id)
        consume_coupon(self.session, coupon.id)
        with self.assertRaises(CouponIneligibleError):
            consume_coupon(self.session, coupon.id)
        self.session.commit()
        self.session.expire_all()
        self.assertEqual(get_coupon(self.session, coupon.id).used_count, 2)

    def test_create_validation(self):
        with self.assertRaises(ValidationError):
            create_coupon(self.session, code=_code(), coupon_type="gift", value=1)
        with self.assertRaises(ValidationError):
            create_coupon(self.session, code=_code(), coupon_type=COUPON_TYPE_PERCENT, value=120)
        with self.assertRaises(ValidationError):
            create_coupon(self.session, code=_code(), coupon_type=COUPON_TYPE_AMOUNT, value=0)
        existing = self._coupon()
        with self.assertRaises(ValidationError):
            create_coupon(self.session, code=existing.code, value=100)

    def test_batch_and_update(self):
        prefix = f"B{uuid.uuid4().hex[:4].upper()}"
        codes = create_coupons_batch(self.session, 3, prefix=prefix, coupon_type=COUPON_TYPE_AMOUNT, value=500)
        self.assertEqual(len(set(codes)), 3)
        self.assertTrue(all(c.startswith(prefix) for c in codes))
        page = list_coupons(self.session, search=prefix)
        self.assertEqual(page["total"], 3)
        self.coupon_ids.extend(x["id"] for x in page["list"])

        updated = update_coupon(self.session, page["list"][0]["id"], is_active=False, value=800)
        self.assertFalse(updated.is_active)
        self.assertEqual(updated.value, 800)

        with self.assertRaises(ValidationError):
            create_coupons_batch(self.session, 0, value=500)

    def test_parse_plan_ids(self):
        self.assertEqual(parse_plan_ids("1, 2,,3"), {1, 2, 3})
        self.assertEqual(parse_plan_ids([4, "5"]), {4, 5})
        self.assertEqual(parse_plan_ids(""), set())
        with self.assertRaises(ValidationError):
            parse_plan_ids("1,x")


if __name__ == "__main__":
    unittest.main()
