# backend/pawbook/schemas/bookings.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    service_id: int
    client_id: int

    start_time: datetime
    end_time: datetime

    pet_ids: list[int] = Field(min_length=1)
    field_ids: list[int] = []
    assigned_staff_id: Optional[int] = None

    model_config = {"from_attributes": True}


class BookingRead(BaseModel):
    id: int

    service_id: int
    client_id: int

    start_time: datetime
    end_time: datetime

    field_ids: list[int]
    pet_ids: list[int]
    assigned_staff_id: Optional[int] = None
    vehicle_id: Optional[int] = None

    price_per_pet: float
    status: str

    model_config = {"from_attributes": True}


class BatchBookingCreate(BaseModel):
    bookings: list[BookingCreate] = Field(min_length=1)


class BookingOutcomeRead(BaseModel):
    status: str  # committed | rejected
    booking: Optional[BookingRead] = None
    error_type: Optional[str] = None  # capacity | validation | transient
    error: Optional[str] = None
    details: dict = {}


class BatchBookingRead(BaseModel):
    status: str  # fully_booked | partially_booked | fully_failed
    committed_count: int
    rejected_count: int
    outcomes: list[BookingOutcomeRead]
