from .base import Base, Column, String, DateTime, Integer, Text


class BillingOrder(Base):
    __tablename__ = "billing_orders"

    id = Column(String(255), primary_key=True, index=True)
    order_no = Column(String(64), unique=True, index=True, nullable=False)
    owner_id = Column(String(50), index=True, nullable=False)
    order_type = Column(String(20), nullable=False, default="plan")  # plan/recharge
    plan_id = Column(Integer, nullable=True, index=True)
    coupon_id = Column(Integer, nullable=True, index=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    paid_cents = Column(Integer, nullable=False, default=0)
    bonus_days = Column(Integer, nullable=False, default=0)
    currency = Column(String(16), nullable=False, default="CNY")
    channel = Column(String(32), nullable=True)  # 支付时写入
    status = Column(String(32), index=True, nullable=False, default="pending")
    trade_no = Column(String(128), nullable=True)
    provider_payload = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    checkout_expires_at = Column(DateTime, nullable=True)  # 外部收银台有效期，期间不做超时取消
    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
