import os

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/nyanpass.db"


class Db:
    """SQLAlchemy 引擎与会话工厂，首次使用时按配置惰性初始化。"""

    def __init__(self, url: str = ""):
        self.url = url
        self.engine = None
        self._session_factory = None

    def init(self, url: str = ""):
        self.url = url or self.url or os.getenv("DB") or cfg.get("db", DEFAULT_DB_URL)
        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
            path = self.url.replace("sqlite:///", "", 1)
            folder = os.path.dirname(path)
            if folder and path != ":memory:":
                os.makedirs(folder, exist_ok=True)
        self.engine = create_engine(self.url, connect_args=connect_args, pool_pre_ping=True)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False)
        log_event(logger, E.SYSTEM_DB_INIT, url=self.url.split("@")[-1])
        return self.engine

    def get_engine(self):
        if self.engine is None:
            self.init()
        return self.engine

    def get_session(self):
        if self._session_factory is None:
            self.init()
        return self._session_factory()

    def create_tables(self):
        # 注册全部模型到 Base.metadata
        import core.models  # noqa: F401
        from core.models.base import Base

        engine = self.get_engine()
        Base.metadata.create_all(engine)
        self._add_missing_columns(engine, Base.metadata)

    def _add_missing_columns(self, engine, metadata):
        """老库补齐新增的可空列，create_all 不会修改已存在的表。"""
        inspector = inspect(engine)
        with engine.begin() as conn:
            for table in metadata.sorted_tables:
                if not inspector.has_table(table.name):
                    continue
                existing = {c["name"] for c in inspector.get_columns(table.name)}
                for column in table.columns:
                    if column.name in existing or not column.nullable:
                        continue
                    col_type = column.type.compile(dialect=engine.dialect)
                    conn.execute(text(f"ALTER TABLE {table.name} ADD COLUMN {column.name} {col_type}"))
                    logger.info("补充字段: %s.%s", table.name, column.name)


DB = Db()
