from .base import Base, Column, String, DateTime, Integer, Boolean, Text


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, default="")
    price_cents = Column(Integer, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    transfer_gb = Column(Integer, nullable=False, default=0)
    speed_limit = Column(Integer, nullable=False, default=0)  # Mbps, 0 不限
    device_limit = Column(Integer, nullable=False, default=0)
    group_id = Column(Integer, nullable=False, default=1)
    hidden = Column(Boolean, default=False)
    sort = Column(Integer, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
