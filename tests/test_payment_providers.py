from datetime import datetime
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qsl, urlsplit

import stripe

from core.errors import ExternalPaymentError, ValidationError
from core.payment import (
    EPayProvider,
    MockProvider,
    PayRequest,
    StripeProvider,
    get_payment_provider,
)
from core.payment.epay import sign_params


def _request(method="alipay", amount_cents=8000):
    return PayRequest(order_no="NP20260101000000ABCDEF", amount_cents=amount_cents, description="套餐", client_ip="10.0.0.1", method=method)


class EPayProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = EPayProvider(url="https://pay.example.com", pid="1001", key="merchant-key", enabled=True)

    def test_sign_params_ignores_sign_and_empty_values(self):
        params = {"b": "2", "a": "1", "sign": "x", "sign_type": "MD5", "empty": ""}
        self.assertEqual(sign_params(params, "k"), sign_params({"a": "1", "b": "2"}, "k"))
        self.assertNotEqual(sign_params(params, "k"), sign_params(params, "other"))

    def test_pay_builds_signed_redirect(self):
        resp = self.provider.pay(_request())
        self.assertEqual(resp.content_type, "url")
        parts = urlsplit(resp.pay_url)
        self.assertEqual(parts.path, "/submit.php")
        params = dict(parse_qsl(parts.query))
        self.assertEqual(params["pid"], "1001")
        self.assertEqual(params["type"], "alipay")
        self.assertEqual(params["money"], "80.00")
        self.assertEqual(params["out_trade_no"], "NP20260101000000ABCDEF")
        self.assertTrue(params["notify_url"].endswith("/billing/notify/epay"))
        self.assertEqual(params["sign"], sign_params(params, "merchant-key"))

    def test_pay_requires_enabled(self):
        with self.assertRaises(ValidationError):
            EPayProvider(url="https://pay.example.com", pid="1", key="k", enabled=False).pay(_request())

    def test_verify(self):
        params = {
            "pid": "1001",
            "trade_no": "2026010122001",
            "out_trade_no": "NP1",
            "type": "wxpay",
            "money": "80.00",
            "trade_status": "TRADE_SUCCESS",
        }
        params["sign"] = sign_params(params, "merchant-key")
        params["sign_type"] = "MD5"
        result = self.provider.verify(params)
        self.assertEqual(result.order_no, "NP1")
        self.assertEqual(result.amount_cents, 8000)
        self.assertEqual(result.trade_no, "2026010122001")

        with self.assertRaises(ValidationError):
            self.provider.verify(dict(params, money="0.01"))
        with self.assertRaises(ValidationError):
            self.provider.verify({k: v for k, v in params.items() if k != "sign"})

        pending = dict(params, trade_status="WAIT_BUYER_PAY")
        pending["sign"] = sign_params(pending, "merchant-key")
        with self.assertRaises(ValidationError):
            self.provider.verify(pending)


class StripeProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = StripeProvider(api_key="sk_test_x", webhook_key="whsec_x", enabled=True)

    @patch("stripe.checkout.Session.create")
    def test_pay_creates_checkout_session(self, create):
        create.return_value = MagicMock(url="https://checkout.stripe.com/c/pay/cs_1", id="cs_1")
        resp = self.provider.pay(_request(method="stripe"))

        self.assertEqual(resp.pay_url, "https://checkout.stripe.com/c/pay/cs_1")
        self.assertEqual(resp.trade_no, "cs_1")
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs["client_reference_id"], "NP20260101000000ABCDEF")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 8000)
        self.assertEqual(kwargs["mode"], "payment")
        self.assertNotIn("expires_at", kwargs)

    @patch("stripe.checkout.Session.create")
    def test_checkout_session_expires_with_order(self, create):
        create.return_value = MagicMock(url="https://checkout.stripe.com/c/pay/cs_2", id="cs_2")
        deadline = datetime(2026, 1, 1, 12, 30, 0)
        req = _request(method="stripe").model_copy(update={"expires_at": deadline})
        self.provider.pay(req)
        self.assertEqual(create.call_args.kwargs["expires_at"], int(deadline.timestamp()))

    @patch("stripe.checkout.Session.create")
    def test_gateway_error_is_retryable(self, create):
        create.side_effect = stripe.StripeError("gateway down")
        with self.assertRaises(ExternalPaymentError) as ctx:
            self.provider.pay(_request(method="stripe"))
        self.assertTrue(ctx.exception.retryable)

    @patch("stripe.Webhook.construct_event")
    def test_verify_checkout_completed(self, construct_event):
        session_obj = SimpleNamespace(client_reference_id="NP1", amount_total=8000, id="cs_1")
        construct_event.return_value = SimpleNamespace(type="checkout.session.completed", data=SimpleNamespace(object=session_obj))

        result = self.provider.verify({"payload": "{}", "sig_header": "t=1,v1=x"})
        construct_event.assert_called_once_with("{}", "t=1,v1=x", "whsec_x")
        self.assertEqual(result.order_no, "NP1")
        self.assertEqual(result.amount_cents, 8000)
        self.assertEqual(result.trade_no, "cs_1")

    @patch("stripe.Webhook.construct_event")
    def test_verify_rejects_bad_signature_and_other_events(self, construct_event):
        construct_event.side_effect = stripe.SignatureVerificationError("bad signature", "t=1,v1=x")
        with self.assertRaises(ValidationError):
            self.provider.verify({"payload": "{}", "sig_header": "t=1,v1=x"})

        construct_event.side_effect = None
        construct_event.return_value = SimpleNamespace(type="payment_intent.created", data=SimpleNamespace(object=None))
        with self.assertRaises(ValidationError):
            self.provider.verify({"payload": "{}", "sig_header": "t=1,v1=x"})


class MockProviderTestCase(unittest.TestCase):
    def test_build_notify_and_verify(self):
        provider = MockProvider(secret="s", enabled=True)
        resp = provider.pay(_request(method="mock", amount_cents=1234))
        self.assertTrue(resp.pay_url.startswith("mockpay://NP20260101000000ABCDEF?"))
        self.assertTrue(resp.trade_no.startswith("MOCK"))

        result = provider.verify(provider.build_notify("NP1", 1234, trade_no="T1"))
        self.assertEqual((result.order_no, result.amount_cents, result.trade_no), ("NP1", 1234, "T1"))

        forged = MockProvider(secret="other", enabled=True).build_notify("NP1", 1234)
        with self.assertRaises(ValidationError):
            provider.verify(forged)

    def test_disabled(self):
        with self.assertRaises(ValidationError):
            MockProvider(secret="s", enabled=False).pay(_request(method="mock"))


class ProviderRegistryTestCase(unittest.TestCase):
    def test_lookup(self):
        self.assertIsInstance(get_payment_provider("alipay"), EPayProvider)
        self.assertIsInstance(get_payment_provider("WXPAY"), EPayProvider)
        self.assertIsInstance(get_payment_provider("epay"), EPayProvider)
        self.assertIsInstance(get_payment_provider("stripe"), StripeProvider)
        self.assertIsInstance(get_payment_provider("mock"), MockProvider)
        with self.assertRaises(ValidationError):
            get_payment_provider("balance")


if __name__ == "__main__":
    unittest.main()
