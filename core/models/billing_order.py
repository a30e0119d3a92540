from .base import Base, Column, String, DateTime, Integer, Text, Index


class BillingOrder(Base):
    __tablename__ = "billing_orders"
    __table_args__ = (
        Index("ix_billing_orders_user_status", "user_id", "status"),
    )

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(64), index=True, nullable=False)
    payment_order_id = Column(String(128), unique=True, index=True, nullable=False)
    gateway_order_id = Column(String(128), index=True, nullable=True)
    gateway_payment_id = Column(String(128), index=True, nullable=True)
    refunded_payment_id = Column(String(128), nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False, default="INR")
    status = Column(String(32), nullable=False, default="created", index=True)
    order_type = Column(String(32), nullable=False, default="other")
    related_id = Column(String(128), nullable=True)
    description = Column(String(500), default="")
    payment_context = Column(Text, default="")
    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime)
