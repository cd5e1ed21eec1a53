from .base import Base, Column, String, DateTime, Integer, Boolean


class RechargeCode(Base):
    __tablename__ = "recharge_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, index=True, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_by = Column(String(50), nullable=True, index=True)
    used_at = Column(DateTime, nullable=True)
    remark = Column(String(200), default="")
    created_by = Column(String(50), default="")
    created_at = Column(DateTime)
