from .base import Base, Column, String, DateTime, Text, UniqueConstraint


class PaymentEvent(Base):
    """已处理的回调投递记录（幂等标记），按 (event_type, entity_id, delivery_id) 去重。"""

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("event_type", "entity_id", "delivery_id", name="uq_payment_event_delivery"),
    )

    id = Column(String(64), primary_key=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(128), nullable=False, index=True)
    delivery_id = Column(String(128), nullable=False)
    user_id = Column(String(64), index=True, nullable=True)
    outcome = Column(String(16), nullable=False, default="applied")
    detail = Column(String(500), default="")
    payload = Column(Text, default="")
    received_at = Column(DateTime, index=True)
