import os
import uuid
from contextlib import contextmanager
from datetime import datetime

os.environ.setdefault("DB", "sqlite:///data/test_nyanpass.db")

from core.config import cfg  # noqa: E402
from core.db import DB  # noqa: E402
from core.models.user import User  # noqa: E402
from core.plan_service import create_plan  # noqa: E402


def new_username(prefix: str = "u") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


def create_user(session, balance_cents: int = 0, username: str = "", role: str = "user", invite_code: str = "", invited_by: str = "") -> User:
    now = datetime.now()
    name = username or new_username()
    user = User(
        id=str(uuid.uuid4()),
        username=name,
        email=f"{name}@example.com",
        password_hash="hashed",
        role=role,
        is_active=True,
        balance_cents=balance_cents,
        commission_cents=0,
        transfer_enable=0,
        group_id=0,
        invite_code=invite_code or uuid.uuid4().hex[:12],
        invited_by=invited_by or None,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    session.commit()
    return user


def create_test_plan(session, price_cents: int = 10000, **fields):
    data = {
        "name": f"plan_{uuid.uuid4().hex[:6]}",
        "price_cents": price_cents,
        "duration_days": 30,
        "transfer_gb": 100,
        "group_id": 2,
    }
    data.update(fields)
    return create_plan(session, **data)


def reload_user(session, username: str) -> User:
    session.expire_all()
    return session.query(User).filter(User.username == username).first()


@contextmanager
def override_config(values):
    """临时覆盖配置，如 override_config({"payment.mock.enabled": True})。"""
    missing = object()
    saved = {}
    for dotted, value in values.items():
        saved[dotted] = cfg.get(dotted, missing)
        cfg.set(dotted, value)
    try:
        yield
    finally:
        for dotted, value in saved.items():
            cfg.set(dotted, None if value is missing else value)


def setup_database():
    DB.create_tables()
    return DB.get_session()
