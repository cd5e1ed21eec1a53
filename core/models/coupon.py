from .base import Base, Column, String, DateTime, Integer, Boolean


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, index=True, nullable=False)
    coupon_type = Column(String(16), nullable=False, default="amount")  # amount/percent/days
    # amount: 减免分; percent: 折扣百分比(10 即 10% off); days: 赠送天数
    value = Column(Integer, nullable=False, default=0)
    min_amount_cents = Column(Integer, nullable=False, default=0)
    max_discount_cents = Column(Integer, nullable=False, default=0)
    limit_per_user = Column(Integer, nullable=False, default=1)
    total_limit = Column(Integer, nullable=False, default=0)
    used_count = Column(Integer, nullable=False, default=0)
    plan_ids = Column(String(255), default="")  # 逗号分隔，空表示全部套餐
    start_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
