from typing import Dict, Optional

import stripe

from core.config import cfg, get_bool
from core.errors import ExternalPaymentError, ValidationError
from core.log import get_logger
from .base import NotifyResult, PayRequest, PayResponse, PaymentProvider

logger = get_logger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"


class StripeProvider(PaymentProvider):
    """Stripe Checkout，回调走 webhook 签名校验。"""

    name = "stripe"

    def __init__(self, api_key: Optional[str] = None, webhook_key: Optional[str] = None, enabled: Optional[bool] = None):
        self.api_key = str(api_key if api_key is not None else cfg.get("payment.stripe.api_key", ""))
        self.webhook_key = str(webhook_key if webhook_key is not None else cfg.get("payment.stripe.webhook_key", ""))
        self.enabled = get_bool("payment.stripe.enabled", False) if enabled is None else bool(enabled)

    def pay(self, req: PayRequest) -> PayResponse:
        if not self.enabled or not self.api_key:
            raise ValidationError("Stripe 支付未启用")
        stripe.api_key = self.api_key
        base_url = str(cfg.get("app.base_url", "http://127.0.0.1:8001")).rstrip("/")
        extra = {}
        if req.expires_at:
            extra["expires_at"] = int(req.expires_at.timestamp())
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": "cny",
                            "product_data": {"name": req.description or f"订单 {req.order_no}"},
                            "unit_amount": req.amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                success_url=f"{base_url}/user/orders?status=success",
                cancel_url=f"{base_url}/user/orders?status=cancel",
                client_reference_id=req.order_no,
                **extra,
            )
        except stripe.StripeError as e:
            logger.warning("Stripe 创建支付会话失败: order_no=%s err=%s", req.order_no, e)
            raise ExternalPaymentError(f"Stripe 创建支付失败: {e}")
        return PayResponse(content_type="url", pay_url=session.url, trade_no=session.id)

    def verify(self, params: Dict[str, str]) -> NotifyResult:
        payload = params.get("payload") or ""
        sig_header = params.get("sig_header") or ""
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, self.webhook_key)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise ValidationError(f"Stripe 回调验签失败: {e}")
        if event.type != EVENT_CHECKOUT_COMPLETED:
            raise ValidationError(f"忽略的事件类型: {event.type}")
        obj = event.data.object
        return NotifyResult(
            order_no=str(getattr(obj, "client_reference_id", "") or ""),
            amount_cents=int(getattr(obj, "amount_total", 0) or 0),
            trade_no=str(getattr(obj, "id", "") or ""),
        )
