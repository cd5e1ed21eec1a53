import json
import unittest
import uuid
from urllib.parse import urlencode

from fastapi import HTTPException
from starlette.requests import Request

from billing_fixtures import create_test_plan, create_user, override_config, reload_user
from apis.auth import RegisterRequest, register
from apis.billing import (
    CancelOrderRequest,
    CreateOrderRequest,
    PayOrderRequest,
    RefundRequest,
    admin_refund,
    cancel_billing_order,
    create_billing_order,
    get_my_orders,
    get_order,
    pay,
    payment_notify,
)
from apis.coupon import VerifyCouponRequest, verify as verify_coupon_api
from apis.recharge import OnlineRechargeRequest, RedeemRequest, online_recharge, redeem
from apis.user import AdjustBalanceRequest, admin_adjust_balance, get_balance_logs, get_profile
from core.db import DB
from core.errors import ForbiddenError, InsufficientFundsError, ValidationError
from core.models.balance_log import BalanceLog
from core.models.billing_order import BillingOrder
from core.models.invite_record import InviteRecord
from core.models.plan import Plan
from core.models.user import User
from core.payment import MockProvider
from core.recharge_service import create_recharge_codes
from core.models.recharge_code import RechargeCode
from web import billing_error_handler


def _request(method="POST", query=None, headers=None):
    scope = {
        "type": "http",
        "method": method,
        "path": "/",
        "query_string": urlencode(query or {}).encode("utf-8"),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("127.0.0.1", 52000),
    }
    return Request(scope)


class BillingApiTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.user = create_user(self.session, balance_cents=8000)
        self.username = self.user.username
        self.usernames = [self.username]
        self.plan = create_test_plan(self.session, price_cents=5000)
        self.current_user = {"username": self.username, "role": "user"}
        self.admin = {"username": "admin", "role": "admin"}

    def tearDown(self):
        self.session.rollback()
        self.session.query(InviteRecord).filter(InviteRecord.invitee_id.in_(self.usernames)).delete(synchronize_session=False)
        self.session.query(BillingOrder).filter(BillingOrder.owner_id.in_(self.usernames)).delete(synchronize_session=False)
        self.session.query(BalanceLog).filter(BalanceLog.owner_id.in_(self.usernames)).delete(synchronize_session=False)
        self.session.query(RechargeCode).filter(RechargeCode.used_by.in_(self.usernames)).delete(synchronize_session=False)
        self.session.query(Plan).filter(Plan.id == self.plan.id).delete()
        self.session.query(User).filter(User.username.in_(self.usernames)).delete(synchronize_session=False)
        self.session.commit()
        self.session.close()

    async def _create_order(self):
        result = await create_billing_order(CreateOrderRequest(plan_id=self.plan.id), current_user=self.current_user)
        self.assertEqual(result["code"], 0)
        return result["data"]

    async def test_create_and_pay_with_balance(self):
        order = await self._create_order()
        self.assertEqual(order["status"], "pending")
        self.assertEqual(order["paid_cents"], 5000)

        result = await pay(PayOrderRequest(order_no=order["order_no"], method="balance"), _request(), current_user=self.current_user)
        self.assertEqual(result["code"], 0)
        self.assertEqual(result["data"]["content_type"], "settled")
        self.assertEqual(result["data"]["order"]["status"], "paid")

        detail = await get_order(order["order_no"], current_user=self.current_user)
        self.assertEqual(detail["data"]["status"], "paid")
        listing = await get_my_orders(status="paid", page=1, page_size=20, current_user=self.current_user)
        self.assertEqual(listing["data"]["total"], 1)

        logs = await get_balance_logs(limit=50, current_user=self.current_user)
        self.assertEqual(logs["data"][0]["change_cents"], -5000)

        refunded = await admin_refund(order["order_no"], RefundRequest(reason="测试"), current_user=self.admin)
        self.assertEqual(refunded["data"]["status"], "refunded")
        self.assertEqual(reload_user(self.session, self.username).balance_cents, 8000)

    async def test_insufficient_balance_rendered_as_envelope(self):
        self.session.query(User).filter(User.username == self.username).update({User.balance_cents: 100})
        self.session.commit()
        order = await self._create_order()
        with self.assertRaises(InsufficientFundsError) as ctx:
            await pay(PayOrderRequest(order_no=order["order_no"], method="balance"), _request(), current_user=self.current_user)

        response = await billing_error_handler(_request(), ctx.exception)
        self.assertEqual(response.status_code, 402)
        body = json.loads(response.body)
        self.assertEqual(body["code"], 40201)
        self.assertEqual(body["data"], {"balance_cents": 100, "required_cents": 5000})

    async def test_other_users_order_is_forbidden(self):
        order = await self._create_order()
        stranger = {"username": f"x_{uuid.uuid4().hex[:8]}", "role": "user"}
        with self.assertRaises(ForbiddenError):
            await get_order(order["order_no"], current_user=stranger)
        with self.assertRaises(ForbiddenError):
            await cancel_billing_order(order["order_no"], CancelOrderRequest(), current_user=stranger)

        cancelled = await cancel_billing_order(order["order_no"], CancelOrderRequest(reason="换套餐"), current_user=self.current_user)
        self.assertEqual(cancelled["data"]["status"], "cancelled")

    async def test_admin_routes_require_admin(self):
        order = await self._create_order()
        with self.assertRaises(HTTPException) as ctx:
            await admin_refund(order["order_no"], RefundRequest(), current_user=self.current_user)
        self.assertEqual(ctx.exception.status_code, 403)
        with self.assertRaises(HTTPException):
            await admin_adjust_balance(self.username, AdjustBalanceRequest(change_cents=100), current_user=self.current_user)

        result = await admin_adjust_balance(self.username, AdjustBalanceRequest(change_cents=-3000, remark="扣回"), current_user=self.admin)
        self.assertEqual(result["data"]["balance_cents"], 5000)

    async def test_mock_notify_settles_order(self):
        provider = MockProvider(secret="api-secret", enabled=True)
        with override_config({"payment.mock.enabled": True, "secret": "api-secret"}):
            order = await self._create_order()
            result = await pay(
                PayOrderRequest(order_no=order["order_no"], method="mock"),
                _request(headers={"X-Forwarded-For": "10.1.2.3, 10.0.0.1"}),
                current_user=self.current_user,
            )
            self.assertEqual(result["data"]["content_type"], "url")

            bad = dict(provider.build_notify(order["order_no"], 5000), sign="0" * 32)
            response = await payment_notify("mock", _request(method="GET", query=bad))
            self.assertEqual(response.status_code, 400)

            params = provider.build_notify(order["order_no"], 5000)
            response = await payment_notify("mock", _request(method="GET", query=params))
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.body, b"success")

        detail = await get_order(order["order_no"], current_user=self.current_user)
        self.assertEqual(detail["data"]["status"], "paid")
        self.assertEqual(detail["data"]["channel"], "mock")
        self.assertEqual(reload_user(self.session, self.username).balance_cents, 8000)

    async def test_online_recharge_and_redeem(self):
        with override_config({"payment.mock.enabled": True, "secret": "api-secret"}):
            with self.assertRaises(ValidationError):
                await online_recharge(OnlineRechargeRequest(amount="10", method="balance"), _request(), current_user=self.current_user)

            result = await online_recharge(OnlineRechargeRequest(amount="12.34", method="mock"), _request(), current_user=self.current_user)
            order = result["data"]["order"]
            self.assertEqual(order["order_type"], "recharge")
            self.assertEqual(order["amount_cents"], 1234)

            params = MockProvider(secret="api-secret", enabled=True).build_notify(order["order_no"], 1234)
            response = await payment_notify("mock", _request(method="GET", query=params))
            self.assertEqual(response.status_code, 200)
        self.assertEqual(reload_user(self.session, self.username).balance_cents, 9234)

        code = create_recharge_codes(self.session, "5", count=1)[0]
        redeemed = await redeem(RedeemRequest(code=code), current_user=self.current_user)
        self.assertEqual(redeemed["data"]["balance_cents"], 9734)

        profile = await get_profile(current_user=self.current_user)
        self.assertEqual(profile["data"]["balance_cents"], 9734)

    async def test_verify_coupon_requires_plan_or_amount(self):
        with self.assertRaises(ValidationError):
            await verify_coupon_api(VerifyCouponRequest(code="ANY"), current_user=self.current_user)

    async def test_register_with_invite_code(self):
        username = f"reg_{uuid.uuid4().hex[:8]}"
        self.usernames.append(username)
        result = await register(RegisterRequest(
            username=username,
            password="demo123456",
            email=f"{username}@example.com",
            invite_code=self.user.invite_code,
        ))
        self.assertEqual(result["code"], 0)
        self.assertTrue(result["data"]["invite_code"])

        created = reload_user(self.session, username)
        self.assertEqual(created.invited_by, self.username)
        self.assertTrue(created.verify_password("demo123456"))

        with self.assertRaises(ValidationError):
            await register(RegisterRequest(username=username, password="demo123456"))
        with self.assertRaises(ValidationError):
            await register(RegisterRequest(username=f"bad-{uuid.uuid4().hex[:4]}", password="demo123456"))

        other = f"reg_{uuid.uuid4().hex[:8]}"
        with self.assertRaises(ValidationError):
            await register(RegisterRequest(username=other, password="demo123456", invite_code="nope"))
        self.assertIsNone(reload_user(self.session, other))


if __name__ == "__main__":
    unittest.main()
