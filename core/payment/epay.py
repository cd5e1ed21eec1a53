"""
易支付（EPay）通道

下单只拼接收银台跳转地址，不发起网络请求；签名规则：
参数去掉 sign / sign_type 与空值，按键名排序拼接 k=v&k=v，末尾追加商户密钥后取 MD5。
"""

import hashlib
import hmac
from typing import Dict, Optional
from urllib.parse import urlencode

from core.config import cfg, get_bool, API_BASE
from core.errors import ValidationError
from core.ledger_service import parse_yuan
from core.log import get_logger
from .base import NotifyResult, PayRequest, PayResponse, PaymentProvider

logger = get_logger(__name__)

TRADE_SUCCESS = "TRADE_SUCCESS"


def sign_params(params: Dict[str, str], key: str) -> str:
    items = sorted(
        (k, str(v)) for k, v in params.items()
        if k not in ("sign", "sign_type") and v is not None and str(v) != ""
    )
    text = "&".join(f"{k}={v}" for k, v in items) + str(key or "")
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class EPayProvider(PaymentProvider):
    name = "epay"

    def __init__(self, url: Optional[str] = None, pid: Optional[str] = None, key: Optional[str] = None, enabled: Optional[bool] = None):
        self.url = str(url if url is not None else cfg.get("payment.epay.url", "")).strip()
        self.pid = str(pid if pid is not None else cfg.get("payment.epay.pid", "")).strip()
        self.key = str(key if key is not None else cfg.get("payment.epay.key", ""))
        self.enabled = get_bool("payment.epay.enabled", False) if enabled is None else bool(enabled)

    def pay(self, req: PayRequest) -> PayResponse:
        if not self.enabled or not self.url:
            raise ValidationError("易支付未启用")
        base_url = str(cfg.get("app.base_url", "http://127.0.0.1:8001")).rstrip("/")
        params = {
            "pid": self.pid,
            "type": req.method,
            "out_trade_no": req.order_no,
            "notify_url": f"{base_url}{API_BASE}/billing/notify/{self.name}",
            "return_url": f"{base_url}/user/orders",
            "name": req.description or f"订单 {req.order_no}",
            "money": f"{req.amount_cents / 100:.2f}",
            "clientip": req.client_ip,
        }
        params = {k: v for k, v in params.items() if v}
        params["sign"] = sign_params(params, self.key)
        params["sign_type"] = "MD5"
        gateway = self.url if self.url.endswith("/") else self.url + "/"
        return PayResponse(content_type="url", pay_url=f"{gateway}submit.php?{urlencode(params)}")

    def verify(self, params: Dict[str, str]) -> NotifyResult:
        sign = str(params.get("sign") or "").lower()
        if not sign:
            raise ValidationError("回调缺少签名")
        if not hmac.compare_digest(sign_params(params, self.key), sign):
            raise ValidationError("回调签名无效")
        if params.get("trade_status") != TRADE_SUCCESS:
            raise ValidationError(f"交易未成功: {params.get('trade_status')}")
        order_no = str(params.get("out_trade_no") or "").strip()
        if not order_no:
            raise ValidationError("回调缺少订单号")
        money = params.get("money")
        return NotifyResult(
            order_no=order_no,
            amount_cents=parse_yuan(money) if money else 0,
            trade_no=str(params.get("trade_no") or ""),
        )
