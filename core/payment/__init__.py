from core.errors import ValidationError
from .base import (
    EXTERNAL_METHODS,
    METHOD_ALIPAY,
    METHOD_BALANCE,
    METHOD_MOCK,
    METHOD_STRIPE,
    METHOD_WXPAY,
    PAY_METHODS,
    NotifyResult,
    PayRequest,
    PayResponse,
    PaymentProvider,
)
from .epay import EPayProvider
from .mock import MockProvider
from .stripe_pay import StripeProvider


def get_payment_provider(method: str) -> PaymentProvider:
    """按支付方式或回调通道名取得外部支付通道；alipay/wxpay 共用易支付。"""
    name = str(method or "").strip().lower()
    if name in (METHOD_ALIPAY, METHOD_WXPAY, EPayProvider.name):
        return EPayProvider()
    if name == METHOD_STRIPE:
        return StripeProvider()
    if name == METHOD_MOCK:
        return MockProvider()
    raise ValidationError(f"不支持的支付方式: {method}")
