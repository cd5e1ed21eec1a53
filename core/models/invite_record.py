from .base import Base, Column, String, DateTime, Integer


class InviteRecord(Base):
    __tablename__ = "invite_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    inviter_id = Column(String(50), index=True, nullable=False)
    invitee_id = Column(String(50), unique=True, nullable=False)
    commission_cents = Column(Integer, nullable=False, default=0)
    order_no = Column(String(64), default="")
    status = Column(Integer, default=0)  # 0=待结算 1=已结算
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
