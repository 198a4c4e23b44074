import enum
from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey, Enum, Index, DateTime, text
from sqlalchemy.orm import relationship
from collospot.core.database import Base
from collospot.models.base import TimestampMixin


class SessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    TERMINATED = "TERMINATED"


class HotspotSession(Base, TimestampMixin):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), unique=True, nullable=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(SessionStatus), nullable=False, default=SessionStatus.ACTIVE)
    data_used = Column(BigInteger, nullable=False, default=0)
    router_handle = Column(String(64), nullable=True)

    user = relationship("User", back_populates="sessions")
    plan = relationship("Plan")
    payment = relationship("Payment", back_populates="session")


# At most one ACTIVE session per (user, plan); expired and terminated rows are history.
Index(
    "uq_sessions_active_user_plan",
    HotspotSession.user_id,
    HotspotSession.plan_id,
    unique=True,
    postgresql_where=text("status = 'ACTIVE'"),
    sqlite_where=text("status = 'ACTIVE'"),
)
Index("ix_sessions_status_end_time", HotspotSession.status, HotspotSession.end_time)
