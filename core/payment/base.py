from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

METHOD_BALANCE = "balance"
METHOD_ALIPAY = "alipay"
METHOD_WXPAY = "wxpay"
METHOD_STRIPE = "stripe"
METHOD_MOCK = "mock"

EXTERNAL_METHODS = (METHOD_ALIPAY, METHOD_WXPAY, METHOD_STRIPE, METHOD_MOCK)
PAY_METHODS = (METHOD_BALANCE,) + EXTERNAL_METHODS


class PayRequest(BaseModel):
    order_no: str
    amount_cents: int = Field(gt=0)
    description: str = ""
    client_ip: str = ""
    method: str
    expires_at: Optional[datetime] = None


class PayResponse(BaseModel):
    # url: 跳转收银台；qrcode: 二维码内容；html: 表单
    content_type: str = "url"
    pay_url: str = ""
    trade_no: str = ""


class NotifyResult(BaseModel):
    order_no: str
    amount_cents: int = 0  # 0 表示网关未回传金额
    trade_no: str = ""


class PaymentProvider:
    """外部支付通道：pay() 生成跳转信息，verify() 校验异步回调。"""

    name = ""

    def pay(self, req: PayRequest) -> PayResponse:
        raise NotImplementedError

    def verify(self, params: Dict[str, str]) -> NotifyResult:
        raise NotImplementedError
