# backend/pawbook/schemas/slots.py
"""
Pydantic schemas for slots API.
"""

from datetime import datetime
from pydantic import BaseModel, Field


class AvailableSlotRead(BaseModel):
    """One bookable (or full) time window of a service."""
    service_id: int
    start_time: datetime  # zone-aware, configured business zone
    end_time: datetime
    remaining_capacity: int | None = Field(description="None = unlimited")
    price_per_pet: float
    capacity_mode: str  # field | staff_vehicle
    zero_capacity_reason: str  # none | no_staff | staff_full | base_full
    other_staff_potentially_available: bool = False
    field_ids: list[int]

    model_config = {"from_attributes": True}

