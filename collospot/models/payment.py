import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Enum, Index
from sqlalchemy.orm import relationship
from collospot.core.database import Base
from collospot.models.base import TimestampMixin


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    # CheckoutRequestID; null until the gateway accepts the push.
    checkout_request_id = Column(String(64), unique=True, nullable=True, index=True)
    merchant_request_id = Column(String(64), nullable=True)
    receipt_number = Column(String(64), nullable=True)
    result_code = Column(String(16), nullable=True)
    result_desc = Column(String(255), nullable=True)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    user = relationship("User", back_populates="payments")
    plan = relationship("Plan")
    session = relationship("HotspotSession", back_populates="payment", uselist=False)


Index("ix_payments_status_created", Payment.status, Payment.created_at)
Index("ix_payments_user_status", Payment.user_id, Payment.status)
