from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    duration_hours: int
    data_limit: str
    speed_limit: str
