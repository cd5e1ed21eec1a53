from .base import Base, Column, String, DateTime, Integer


class BalanceLog(Base):
    __tablename__ = "balance_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(50), index=True, nullable=False)
    change_cents = Column(Integer, nullable=False)
    balance_after_cents = Column(Integer, nullable=False)
    reason = Column(String(32), nullable=False)  # order_pay/refund/recharge_code/topup/admin_adjust
    ref_id = Column(String(64), default="")
    created_at = Column(DateTime)
