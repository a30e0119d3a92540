from .base import Base, Column, String, DateTime, Boolean


class User(Base):
    """用户投影：账户主体由用户服务维护，这里只保存计费相关字段。"""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    username = Column(String(64), unique=True, index=True, nullable=False)
    name = Column(String(100), default="")
    email = Column(String(120), default="")
    phone = Column(String(20), default="")
    is_active = Column(Boolean, default=True)
    # 由订阅状态推导，不直接写入
    is_premium = Column(Boolean, default=False, index=True)
    premium_plan_type = Column(String(20), nullable=True)
    premium_expires_at = Column(DateTime, nullable=True)
    trial_used = Column(Boolean, default=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
