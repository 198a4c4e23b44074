from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from collospot.schemas.session import SessionOut


class SessionListResponse(BaseModel):
    items: list[SessionOut]
    total: int


class RouterUserOut(BaseModel):
    session_id: Optional[str] = None
    username: str
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    bytes_in: int = 0
    bytes_out: int = 0
    uptime: Optional[str] = None


class RouterStatusOut(BaseModel):
    reachable: bool
    active_users: int
    users: list[RouterUserOut] = []
    detail: Optional[str] = None


class DashboardOut(BaseModel):
    total_users: int
    active_users: int
    total_revenue: Decimal
    today_revenue: Decimal
    active_sessions: int
    total_sessions: int
    pending_payments: int
