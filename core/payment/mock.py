"""开发环境模拟支付：回调参数与易支付同样做 MD5 签名，密钥取 secret。"""

import hmac
import uuid
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional
from urllib.parse import urlencode

from core.config import cfg, get_bool
from core.errors import ValidationError
from .base import NotifyResult, PayRequest, PayResponse, PaymentProvider
from .epay import sign_params, TRADE_SUCCESS


class MockProvider(PaymentProvider):
    name = "mock"

    def __init__(self, secret: Optional[str] = None, enabled: Optional[bool] = None):
        self.secret = str(secret if secret is not None else cfg.get("secret", "nyanpass-dev-secret"))
        self.enabled = get_bool("payment.mock.enabled", False) if enabled is None else bool(enabled)

    def build_notify(self, order_no: str, amount_cents: int, trade_no: str = "") -> Dict[str, str]:
        """生成一份已签名的成功回调参数。"""
        params = {
            "out_trade_no": order_no,
            "trade_no": trade_no or f"MOCK{uuid.uuid4().hex[:12].upper()}",
            "money": f"{int(amount_cents) / 100:.2f}",
            "trade_status": TRADE_SUCCESS,
        }
        params["sign"] = sign_params(params, self.secret)
        return params

    def pay(self, req: PayRequest) -> PayResponse:
        if not self.enabled:
            raise ValidationError("模拟支付未启用")
        params = self.build_notify(req.order_no, req.amount_cents)
        return PayResponse(
            content_type="url",
            pay_url=f"mockpay://{req.order_no}?{urlencode(params)}",
            trade_no=params["trade_no"],
        )

    def verify(self, params: Dict[str, str]) -> NotifyResult:
        sign = str(params.get("sign") or "")
        if not sign or not hmac.compare_digest(sign_params(params, self.secret), sign):
            raise ValidationError("回调签名无效")
        if params.get("trade_status") != TRADE_SUCCESS:
            raise ValidationError("交易未成功")
        try:
            amount_cents = int(Decimal(str(params.get("money") or "0")) * 100)
        except InvalidOperation:
            raise ValidationError("回调金额无效")
        return NotifyResult(
            order_no=str(params.get("out_trade_no") or ""),
            amount_cents=amount_cents,
            trade_no=str(params.get("trade_no") or ""),
        )
