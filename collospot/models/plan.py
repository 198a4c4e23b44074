from sqlalchemy import Column, Integer, String, Numeric, Boolean, Text, Index
from collospot.core.database import Base
from collospot.models.base import TimestampMixin


class Plan(Base, TimestampMixin):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    duration_hours = Column(Integer, nullable=False)
    data_limit = Column(String(32), nullable=False)
    speed_limit = Column(String(32), nullable=False)
    # Plans are deactivated, never deleted: payments and sessions keep pointing at them.
    is_active = Column(Boolean, default=True, nullable=False)


Index("ix_plans_active_price", Plan.is_active, Plan.price)
