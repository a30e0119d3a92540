import os
import threading

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.config import cfg
from core.models.base import Base


DEFAULT_DB_URL = "sqlite:///data/billing.db"


class Db:
    def __init__(self, url: str = ""):
        self.url = str(url or cfg.get("db", DEFAULT_DB_URL))
        self._engine = None
        self._session_factory = None
        self._lock = threading.Lock()

    def _ensure_sqlite_dir(self):
        if not self.url.startswith("sqlite:///"):
            return
        path = self.url[len("sqlite:///"):]
        if not path or path == ":memory:":
            return
        folder = os.path.dirname(path)
        if folder:
            os.makedirs(folder, exist_ok=True)

    @property
    def engine(self):
        if self._engine is None:
            with self._lock:
                if self._engine is None:
                    self._ensure_sqlite_dir()
                    kwargs = {"pool_pre_ping": True}
                    if self.url.startswith("sqlite"):
                        kwargs["connect_args"] = {"check_same_thread": False}
                    self._engine = create_engine(self.url, **kwargs)
                    self._session_factory = sessionmaker(
                        bind=self._engine,
                        autoflush=False,
                        expire_on_commit=False,
                    )
        return self._engine

    def get_session(self):
        # 触发 engine 初始化
        _ = self.engine
        return self._session_factory()

    def create_tables(self):
        # 注册全部模型
        import core.models  # noqa: F401

        Base.metadata.create_all(self.engine)


DB = Db()
