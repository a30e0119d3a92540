from .base import Base, Column, String, DateTime, Integer, Text, Boolean, Index


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
        Index("ix_subscriptions_end_status", "end_date", "status"),
    )

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(64), index=True, nullable=False)
    payment_subscription_id = Column(String(128), unique=True, index=True, nullable=False)
    gateway_subscription_id = Column(String(128), index=True, nullable=True)
    plan_id = Column(String(128), index=True, nullable=False)
    plan_name = Column(String(100), nullable=False, default="")
    plan_type = Column(String(20), index=True, nullable=False)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="INR")
    billing_cycle = Column(String(20), nullable=False, default="monthly")
    status = Column(String(32), nullable=False, default="created", index=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    auto_renewal = Column(Boolean, nullable=False, default=True)
    cancellation_reason = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    short_url = Column(String(500), default="")
    payment_context = Column(Text, default="")
    activated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime)
