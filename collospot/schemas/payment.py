from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from collospot.models.payment import PaymentStatus


class InitiatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone: str = Field(min_length=9, max_length=20)
    plan_id: int = Field(alias="planId")
    amount: Decimal = Field(gt=0)


class InitiatePaymentResponse(BaseModel):
    correlation_id: str
    customer_message: str


class PaymentStatusOut(BaseModel):
    status: str
    amount: Decimal
    session_token: Optional[str] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    plan_id: int
    amount: Decimal
    status: PaymentStatus
    checkout_request_id: Optional[str] = None
    receipt_number: Optional[str] = None
    result_desc: Optional[str] = None
    created_at: datetime
