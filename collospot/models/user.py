import enum
from sqlalchemy import Column, Integer, String, Boolean, Enum, Index
from sqlalchemy.orm import relationship
from collospot.core.database import Base
from collospot.models.base import TimestampMixin


class UserRole(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ADMIN_ROLES = {UserRole.ADMIN, UserRole.SUPER_ADMIN}


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.CUSTOMER)
    is_active = Column(Boolean, default=True, nullable=False)

    payments = relationship("Payment", back_populates="user")
    sessions = relationship("HotspotSession", back_populates="user")


Index("ix_users_role_active", User.role, User.is_active)
