from .base import Base, Column, String, DateTime, Integer, BigInteger, Boolean


class User(Base):
    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    username = Column(String(50), unique=True, nullable=False)
    email = Column(String(100), default="")
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    role = Column(String(20), default="user")  # admin/user

    # 资产（单位：分）
    balance_cents = Column(Integer, nullable=False, default=0)
    commission_cents = Column(Integer, nullable=False, default=0)

    # 套餐权益
    plan_id = Column(Integer, nullable=True, index=True)
    plan_expires_at = Column(DateTime, nullable=True)
    transfer_enable = Column(BigInteger, nullable=False, default=0)  # 字节
    group_id = Column(Integer, nullable=False, default=0)

    # 邀请
    invite_code = Column(String(32), unique=True, index=True)
    invited_by = Column(String(50), nullable=True, index=True)

    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def verify_password(self, password: str) -> bool:
        """验证密码"""
        from core.auth import pwd_context
        return pwd_context.verify(password, self.password_hash)
