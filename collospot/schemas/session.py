from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from collospot.models.session import SessionStatus


class ConnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(alias="sessionToken", min_length=1, max_length=64)


class SessionSummary(BaseModel):
    """What a customer sees about their own session."""

    model_config = ConfigDict(from_attributes=True)

    token: str
    plan_id: int
    plan_name: str
    start_time: datetime
    end_time: datetime
    status: str
    remaining_seconds: int


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    plan_id: int
    payment_id: Optional[int] = None
    token: str
    start_time: datetime
    end_time: datetime
    status: SessionStatus
    data_used: int
    router_handle: Optional[str] = None


class ConnectResponse(BaseModel):
    message: str
    session: SessionSummary
